"""
Account ledger.

The only code allowed to change an account balance. Every change is an
append-only ledger entry whose before/after balances chain onto the
previous entry, and the account row carries a version number that is
bumped with each change.
"""

import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from stakehouse.core.database import Database
from stakehouse.core.exceptions import ConcurrencyConflict, InsufficientFunds, UnknownAccount
from stakehouse.core.logger import get_logger
from stakehouse.core.money import ZERO, MoneyLike, to_money

logger = get_logger("ledger")

ENTRY_TYPES = ("bet", "win", "deposit", "withdrawal")
DEBIT_TYPES = ("bet", "withdrawal")


@dataclass
class LedgerEntryDraft:
    """An entry that has not been applied yet. `amount` is signed."""

    entry_type: str
    amount: Decimal
    game_id: Optional[int] = None
    wager_id: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if self.entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unknown entry type: {self.entry_type}")
        self.amount = to_money(self.amount)
        if self.amount == 0:
            raise ValueError("Ledger entries cannot be zero")
        if (self.entry_type in DEBIT_TYPES) != (self.amount < 0):
            raise ValueError(f"Wrong sign for a {self.entry_type} entry: {self.amount}")

    @classmethod
    def bet(cls, stake: Decimal, game_id: int, wager_id: str, description: str = None):
        return cls("bet", -to_money(stake), game_id, wager_id, description)

    @classmethod
    def win(cls, payout: Decimal, game_id: int, wager_id: str, description: str = None):
        return cls("win", to_money(payout), game_id, wager_id, description)


@dataclass
class LedgerEntry:
    id: int
    account_id: int
    entry_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    created_at: str
    game_id: Optional[int] = None
    wager_id: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> "LedgerEntry":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            entry_type=row["entry_type"],
            amount=Decimal(row["amount"]),
            balance_before=Decimal(row["balance_before"]),
            balance_after=Decimal(row["balance_after"]),
            created_at=row["created_at"],
            game_id=row.get("game_id"),
            wager_id=row.get("wager_id"),
            description=row.get("description"),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.entry_type,
            "amount": str(self.amount),
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "game_id": self.game_id,
            "wager_id": self.wager_id,
            "description": self.description,
            "created_at": self.created_at,
        }


@dataclass
class Account:
    id: int
    balance: Decimal
    initial_balance: Decimal
    version: int
    created_at: str
    updated_at: str
    label: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> "Account":
        return cls(
            id=row["id"],
            balance=Decimal(row["balance"]),
            initial_balance=Decimal(row["initial_balance"]),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            label=row.get("label"),
        )

    def to_dict(self) -> Dict:
        return {
            "account_id": self.id,
            "label": self.label,
            "balance": str(self.balance),
            "initial_balance": str(self.initial_balance),
            "version": self.version,
        }


@dataclass
class LedgerAudit:
    """Outcome of replaying an account's entries against its balance."""

    account_id: int
    entry_count: int
    initial_balance: Decimal
    balance: Decimal
    expected_balance: Decimal
    chain_breaks: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.chain_breaks and self.balance == self.expected_balance

    def to_dict(self) -> Dict:
        return {
            "account_id": self.account_id,
            "entry_count": self.entry_count,
            "initial_balance": str(self.initial_balance),
            "balance": str(self.balance),
            "expected_balance": str(self.expected_balance),
            "chain_breaks": self.chain_breaks,
            "ok": self.ok,
        }


class AccountLedger:
    def __init__(self, database: Database, starting_balance: MoneyLike = "1000.00"):
        self.db = database
        self.starting_balance = to_money(starting_balance)

    # ==================== Accounts ====================

    def open_account(self, initial_balance: MoneyLike = None, label: str = None) -> Account:
        balance = self.starting_balance if initial_balance is None else to_money(initial_balance)
        if balance < 0:
            raise ValueError("Initial balance cannot be negative")

        with self.db.transaction() as conn:
            account_id = self.db.create_account(conn, balance, label=label)
        logger.info(f"Opened account {account_id} with {balance}", extra={"account_id": account_id})
        return self.get_account(account_id)

    def get_account(self, account_id: int, conn: sqlite3.Connection = None) -> Account:
        row = self.db.fetch_account(account_id, conn)
        if row is None:
            raise UnknownAccount(f"Account {account_id} not found", account_id=account_id)
        return Account.from_row(row)

    def get_balance(self, account_id: int, conn: sqlite3.Connection = None) -> Decimal:
        return self.get_account(account_id, conn).balance

    # ==================== Applying entries ====================

    def apply_entries(
        self,
        account_id: int,
        drafts: Sequence[LedgerEntryDraft],
        conn: sqlite3.Connection = None,
    ) -> Tuple[Decimal, List[LedgerEntry]]:
        """
        Apply `drafts` in order and return the new balance with the stored entries.

        With `conn` the entries join the caller's open transaction and commit
        or roll back with it. Without it they get a transaction of their own.

        Raises:
            InsufficientFunds: some step would take the balance below zero.
                Nothing is written in that case.
            ConcurrencyConflict: the account changed since it was read.
        """
        if not drafts:
            raise ValueError("No ledger entries to apply")

        if conn is not None:
            return self._apply(conn, account_id, drafts)
        with self.db.transaction() as conn:
            return self._apply(conn, account_id, drafts)

    def _apply(
        self, conn: sqlite3.Connection, account_id: int, drafts: Sequence[LedgerEntryDraft]
    ) -> Tuple[Decimal, List[LedgerEntry]]:
        account = self.get_account(account_id, conn)

        # Check the whole sequence before writing anything
        steps = []
        running = account.balance
        for draft in drafts:
            after = running + draft.amount
            if after < 0:
                raise InsufficientFunds(
                    "Insufficient balance",
                    account_id=account_id,
                    balance=str(account.balance),
                    required=str(-draft.amount),
                )
            steps.append((draft, running, after))
            running = after

        entries = []
        for draft, before, after in steps:
            row = self.db.insert_ledger_entry(
                conn,
                account_id=account_id,
                entry_type=draft.entry_type,
                amount=draft.amount,
                balance_before=before,
                balance_after=after,
                game_id=draft.game_id,
                wager_id=draft.wager_id,
                description=draft.description,
            )
            entries.append(LedgerEntry.from_row(row))

        if not self.db.update_account_balance(conn, account_id, running, account.version):
            raise ConcurrencyConflict(
                f"Account {account_id} changed during settlement", account_id=account_id
            )

        logger.debug(
            f"Applied {len(entries)} entries, balance {account.balance} -> {running}",
            extra={"account_id": account_id, "version": account.version + 1},
        )
        return running, entries

    # ==================== Non-game movements ====================

    def deposit(self, account_id: int, amount: MoneyLike, description: str = None) -> LedgerEntry:
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")
        _, entries = self.apply_entries(
            account_id, [LedgerEntryDraft("deposit", amount, description=description or "Deposit")]
        )
        logger.info(f"Deposit of {amount}", extra={"account_id": account_id})
        return entries[0]

    def withdraw(self, account_id: int, amount: MoneyLike, description: str = None) -> LedgerEntry:
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("Withdrawal amount must be positive")
        _, entries = self.apply_entries(
            account_id,
            [LedgerEntryDraft("withdrawal", -amount, description=description or "Withdrawal")],
        )
        logger.info(f"Withdrawal of {amount}", extra={"account_id": account_id})
        return entries[0]

    # ==================== History ====================

    def list_entries(self, account_id: int, limit: int = 50) -> List[LedgerEntry]:
        """Newest first."""
        self.get_account(account_id)
        return [LedgerEntry.from_row(r) for r in self.db.get_ledger_entries(account_id, limit=limit)]

    def audit(self, account_id: int) -> LedgerAudit:
        """Replay every entry and check the chain and the stored balance."""
        account = self.get_account(account_id)
        rows = self.db.get_ledger_entries(account_id, newest_first=False)

        breaks = []
        previous = account.initial_balance
        total = ZERO
        for row in rows:
            entry = LedgerEntry.from_row(row)
            if entry.balance_before != previous or entry.balance_after != previous + entry.amount:
                breaks.append(entry.id)
            previous = entry.balance_after
            total += entry.amount

        report = LedgerAudit(
            account_id=account_id,
            entry_count=len(rows),
            initial_balance=account.initial_balance,
            balance=account.balance,
            expected_balance=account.initial_balance + total,
            chain_breaks=breaks,
        )
        if not report.ok:
            logger.error("Ledger audit failed", extra=report.to_dict())
        return report
