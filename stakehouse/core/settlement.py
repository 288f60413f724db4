"""
Settlement coordinator: the single entry point for placing a wager.

One wager is one SQLite transaction. The stake is validated against the
catalog, the outcome is drawn from a fresh random source, and the bet/win
entries and the game result are written together. If any step fails the
transaction rolls back and the account is left exactly as it was.

Each wager moves through
    validated -> outcome_resolved -> ledger_applied -> result_persisted
or ends in `aborted`. Blackjack deals that leave the hand open stop at
`awaiting_action` instead of `result_persisted`.
"""

import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from stakehouse.core import games
from stakehouse.core.catalog import GameCatalog, GameDefinition
from stakehouse.core.database import Database
from stakehouse.core.exceptions import (
    ConcurrencyConflict,
    InvalidHandAction,
    InvalidStake,
    SettlementTimeout,
)
from stakehouse.core.ledger import AccountLedger, LedgerEntry, LedgerEntryDraft
from stakehouse.core.logger import get_logger
from stakehouse.core.money import ZERO, apply_multiplier, has_subcent_precision, to_money
from stakehouse.core.rng import RandomSourceFactory, system_random_factory

logger = get_logger("settlement")

T = TypeVar("T")

# Opening move -> game type it applies to; None accepts any playable game
NEW_WAGER_ACTIONS = {None: None, "spin": "slots", "deal": "blackjack"}


class WagerState(str, Enum):
    VALIDATED = "validated"
    OUTCOME_RESOLVED = "outcome_resolved"
    LEDGER_APPLIED = "ledger_applied"
    RESULT_PERSISTED = "result_persisted"
    AWAITING_ACTION = "awaiting_action"
    ABORTED = "aborted"


@dataclass
class SettlementResult:
    wager_id: str
    account_id: int
    game_id: int
    game_type: str
    stake: Decimal
    payout: Decimal
    multiplier: Decimal
    result: Optional[str]  # win/loss/push, None while a hand is open
    outcome: Dict
    new_balance: Decimal
    state: WagerState
    entries: List[LedgerEntry] = field(default_factory=list)
    attempts: int = 1

    @property
    def net(self) -> Decimal:
        return self.payout - self.stake

    @property
    def is_settled(self) -> bool:
        return self.state == WagerState.RESULT_PERSISTED

    def to_dict(self) -> Dict:
        return {
            "wager_id": self.wager_id,
            "game_id": self.game_id,
            "game_type": self.game_type,
            "stake": str(self.stake),
            "payout": str(self.payout),
            "net": str(self.net),
            "multiplier": str(self.multiplier),
            "result": self.result,
            "outcome": self.outcome,
            "new_balance": str(self.new_balance),
            "state": self.state.value,
        }


class WagerContext:
    """Identifiers carried through one settlement attempt, used for log context."""

    def __init__(self, wager_id: str, account_id: int, game_id: int, attempt: int = 1):
        self.wager_id = wager_id
        self.account_id = account_id
        self.game_id = game_id
        self.attempt = attempt
        self.state: Optional[WagerState] = None

    def log_fields(self) -> Dict:
        return {
            "wager_id": self.wager_id,
            "account_id": self.account_id,
            "game_id": self.game_id,
            "attempt": self.attempt,
        }


class SettlementCoordinator:
    def __init__(
        self,
        database: Database,
        ledger: AccountLedger,
        catalog: GameCatalog,
        rng_factory: RandomSourceFactory = system_random_factory,
        max_retries: int = 3,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = database
        self.ledger = ledger
        self.catalog = catalog
        self.rng_factory = rng_factory
        self.max_retries = max(1, max_retries)
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    # ==================== Validation ====================

    def validate_stake(self, definition: GameDefinition, stake) -> Decimal:
        """Return the stake as a 2dp Decimal or raise InvalidStake."""
        if isinstance(stake, bool):
            raise InvalidStake("Bet must be a number", stake=str(stake))
        try:
            amount = Decimal(str(stake)) if isinstance(stake, float) else Decimal(stake)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise InvalidStake("Bet must be a number", stake=str(stake)) from e

        if not amount.is_finite() or amount <= 0:
            raise InvalidStake("Bet must be positive", stake=str(stake))
        if has_subcent_precision(amount):
            raise InvalidStake("Bet cannot have more than 2 decimal places", stake=str(stake))
        if amount < definition.min_bet or amount > definition.max_bet:
            raise InvalidStake(
                f"Bet must be between {definition.min_bet} and {definition.max_bet}",
                stake=str(amount),
                min_bet=str(definition.min_bet),
                max_bet=str(definition.max_bet),
            )
        return to_money(amount)

    # ==================== Transaction plumbing ====================

    def transition(self, ctx: WagerContext, state: WagerState, **fields):
        ctx.state = state
        level = logging.WARNING if state == WagerState.ABORTED else logging.INFO
        logger.log(level, f"Wager {state.value}", extra={**ctx.log_fields(), "state": state.value, **fields})

    def run_with_retries(self, operation: Callable[[int], T]) -> T:
        """
        Call `operation(attempt)` until it stops raising ConcurrencyConflict,
        at most `max_retries` times. Other errors propagate immediately.
        """
        attempt = 1
        while True:
            try:
                return operation(attempt)
            except ConcurrencyConflict as e:
                if attempt >= self.max_retries:
                    logger.warning(f"Giving up after {attempt} attempts: {e.message}")
                    raise
                logger.info(f"Retrying after conflict (attempt {attempt}): {e.message}")
                attempt += 1

    @contextmanager
    def unit_of_work(self, ctx: WagerContext) -> Iterator[sqlite3.Connection]:
        """
        One write transaction for a wager step. The deadline is checked just
        before commit; a late settlement rolls back instead of committing.
        """
        deadline = self.clock() + self.timeout_seconds
        try:
            with self.db.transaction() as conn:
                yield conn
                if self.clock() > deadline:
                    raise SettlementTimeout(
                        f"Settlement exceeded {self.timeout_seconds}s", wager_id=ctx.wager_id
                    )
        except Exception as e:
            self.transition(ctx, WagerState.ABORTED, error=getattr(e, "code", type(e).__name__))
            raise

    def record(
        self,
        conn: sqlite3.Connection,
        ctx: WagerContext,
        definition: GameDefinition,
        stake: Decimal,
        outcome: "games.Outcome",
        drafts: Sequence[LedgerEntryDraft] = (),
    ) -> Tuple[Decimal, Decimal, List[LedgerEntry]]:
        """
        Apply `drafts` plus the win entry and, for a finished round, persist
        the game result. Must run inside `unit_of_work`.

        Returns (payout, new_balance, entries).
        """
        drafts = list(drafts)
        payout = apply_multiplier(stake, outcome.multiplier) if outcome.is_terminal else ZERO
        if payout > 0:
            drafts.append(
                LedgerEntryDraft.win(payout, definition.id, ctx.wager_id, f"{definition.name} win")
            )

        if drafts:
            balance, entries = self.ledger.apply_entries(ctx.account_id, drafts, conn=conn)
        else:
            balance, entries = self.ledger.get_balance(ctx.account_id, conn), []
        self.transition(ctx, WagerState.LEDGER_APPLIED, balance=str(balance))

        if outcome.is_terminal:
            self.db.insert_game_result(
                conn,
                wager_id=ctx.wager_id,
                account_id=ctx.account_id,
                game_id=definition.id,
                stake=stake,
                payout=payout,
                outcome=outcome.payload(),
                result=outcome.classification,
            )
        return payout, balance, entries

    def finish(
        self,
        ctx: WagerContext,
        definition: GameDefinition,
        stake: Decimal,
        outcome: "games.Outcome",
        payout: Decimal,
        balance: Decimal,
        entries: List[LedgerEntry],
    ) -> SettlementResult:
        """Log the final state of a committed step and build its result."""
        state = WagerState.RESULT_PERSISTED if outcome.is_terminal else WagerState.AWAITING_ACTION
        self.transition(ctx, state, payout=str(payout))
        return SettlementResult(
            wager_id=ctx.wager_id,
            account_id=ctx.account_id,
            game_id=definition.id,
            game_type=definition.game_type,
            stake=stake,
            payout=payout,
            multiplier=outcome.multiplier if outcome.is_terminal else ZERO,
            result=outcome.classification if outcome.is_terminal else None,
            outcome=outcome.payload(),
            new_balance=balance,
            state=state,
            entries=entries,
            attempts=ctx.attempt,
        )

    # ==================== Settlement ====================

    def settle(self, account_id: int, game_id: int, stake, action: str = None) -> SettlementResult:
        """
        Place and settle one wager.

        `action` names the opening move ("spin" or "deal") and may be left out.
        A move that does not fit the game type is reported as UnknownGame.
        Moves on an open blackjack hand go through BlackjackTable.

        Raises:
            UnknownGame, GameInactive, InvalidStake, UnknownAccount,
            InsufficientFunds: rejected, nothing written.
            ConcurrencyConflict: still conflicting after the retry budget.
            PersistenceFailure: storage failed, nothing written.
        """
        if action not in NEW_WAGER_ACTIONS:
            raise InvalidHandAction(f"'{action}' does not start a wager", action=action)

        definition = self.catalog.get_playable(game_id, NEW_WAGER_ACTIONS[action])
        amount = self.validate_stake(definition, stake)
        self.ledger.get_account(account_id)

        return self.run_with_retries(
            lambda attempt: self._settle_once(account_id, definition, amount, attempt)
        )

    def _settle_once(
        self, account_id: int, definition: GameDefinition, stake: Decimal, attempt: int
    ) -> SettlementResult:
        ctx = WagerContext(uuid.uuid4().hex, account_id, definition.id, attempt)
        self.transition(ctx, WagerState.VALIDATED, stake=str(stake), game_type=definition.game_type)

        outcome = games.resolve(definition, self.rng_factory())
        self.transition(ctx, WagerState.OUTCOME_RESOLVED, terminal=outcome.is_terminal)

        bet = LedgerEntryDraft.bet(stake, definition.id, ctx.wager_id, f"{definition.name} bet")
        with self.unit_of_work(ctx) as conn:
            payout, balance, entries = self.record(conn, ctx, definition, stake, outcome, [bet])
            if definition.game_type == "blackjack":
                self._store_hand(conn, ctx, stake, outcome)

        return self.finish(ctx, definition, stake, outcome, payout, balance, entries)

    def _store_hand(self, conn: sqlite3.Connection, ctx: WagerContext, stake: Decimal, hand):
        state = hand.to_state()
        self.db.insert_hand(
            conn,
            hand_id=ctx.wager_id,
            account_id=ctx.account_id,
            game_id=ctx.game_id,
            stake=stake,
            deck=state["deck"],
            player_cards=state["player_cards"],
            dealer_cards=state["dealer_cards"],
            state=state["state"],
            result=state["result"],
            doubled=state["doubled"],
        )

    # ==================== Game entry points ====================

    def resolve_slot_wager(self, account_id: int, game_id: int, stake) -> Dict:
        result = self.settle(account_id, game_id, stake, action="spin")
        return {**result.to_dict(), **result.outcome}

    def resolve_blackjack_deal(self, account_id: int, game_id: int, stake) -> Dict:
        """Deal a hand. Returns the hand id and the player's view of the table."""
        result = self.settle(account_id, game_id, stake, action="deal")
        return blackjack_view(result)


def blackjack_view(result: SettlementResult) -> Dict:
    return {
        "hand_id": result.wager_id,
        **result.outcome,
        "hand_result": result.outcome.get("result"),
        "stake": str(result.stake),
        "payout": str(result.payout),
        "result": result.result,
        "new_balance": str(result.new_balance),
    }
