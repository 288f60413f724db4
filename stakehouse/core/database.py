"""
Database module for persistent storage.
Uses SQLite for account balances, the append-only ledger, game results,
the game catalog and open blackjack hands.

Money columns are TEXT holding 2dp decimals. Write paths take an explicit
connection so they can be grouped in one `transaction()`; read helpers use
the calling thread's own connection.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import orjson

from stakehouse.core.exceptions import ConcurrencyConflict, PersistenceFailure
from stakehouse.core.logger import get_logger
from stakehouse.core.money import to_money

logger = get_logger("database")

sqlite3.register_adapter(Decimal, str)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def translate_error(error: sqlite3.Error) -> Exception:
    """Map a driver error onto the settlement error taxonomy."""
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return ConcurrencyConflict(f"Database busy: {error}")
    return PersistenceFailure(f"Storage error: {error}")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        label TEXT,
        balance TEXT NOT NULL CHECK (CAST(balance AS REAL) >= 0),
        initial_balance TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS games (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        game_type TEXT NOT NULL,
        min_bet TEXT NOT NULL,
        max_bet TEXT NOT NULL,
        rtp TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        rules TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        game_id INTEGER,
        wager_id TEXT,
        entry_type TEXT NOT NULL
            CHECK (entry_type IN ('bet', 'win', 'deposit', 'withdrawal')),
        amount TEXT NOT NULL,
        balance_before TEXT NOT NULL,
        balance_after TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (account_id) REFERENCES accounts(id),
        FOREIGN KEY (game_id) REFERENCES games(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_account ON ledger_entries(account_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_wager ON ledger_entries(wager_id)",
    """
    CREATE TABLE IF NOT EXISTS game_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        wager_id TEXT UNIQUE NOT NULL,
        account_id INTEGER NOT NULL,
        game_id INTEGER NOT NULL,
        stake TEXT NOT NULL,
        payout TEXT NOT NULL,
        outcome TEXT NOT NULL,
        result TEXT NOT NULL CHECK (result IN ('win', 'loss', 'push')),
        created_at TEXT NOT NULL,
        FOREIGN KEY (account_id) REFERENCES accounts(id),
        FOREIGN KEY (game_id) REFERENCES games(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_results_account ON game_results(account_id, id)",
    """
    CREATE TABLE IF NOT EXISTS blackjack_hands (
        id TEXT PRIMARY KEY,
        account_id INTEGER NOT NULL,
        game_id INTEGER NOT NULL,
        stake TEXT NOT NULL,
        deck TEXT NOT NULL,
        player_cards TEXT NOT NULL,
        dealer_cards TEXT NOT NULL,
        doubled INTEGER NOT NULL DEFAULT 0,
        state TEXT NOT NULL,
        result TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (account_id) REFERENCES accounts(id),
        FOREIGN KEY (game_id) REFERENCES games(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_hands_state ON blackjack_hands(state, updated_at)",
    # History tables are append-only
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_no_update
    BEFORE UPDATE ON ledger_entries
    BEGIN SELECT RAISE(ABORT, 'ledger entries are immutable'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
    BEFORE DELETE ON ledger_entries
    BEGIN SELECT RAISE(ABORT, 'ledger entries are immutable'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS game_results_no_update
    BEFORE UPDATE ON game_results
    BEGIN SELECT RAISE(ABORT, 'game results are immutable'); END
    """,
]


class Database:
    """Thread-safe SQLite wrapper. Each thread gets its own connection."""

    def __init__(self, db_path: Path, busy_timeout_ms: int = 2000):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            # isolation_level=None: transactions are opened explicitly below
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=self.busy_timeout_ms / 1000,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self):
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def close(self):
        """Close every connection opened by any thread."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction on this thread's connection.

        BEGIN IMMEDIATE takes SQLite's write lock up front, so balance reads
        inside the block cannot go stale. Nested use joins the outer
        transaction; only the outermost block commits or rolls back.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            yield conn
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise translate_error(e) from e

        try:
            yield conn
        except sqlite3.Error as e:
            self._rollback(conn)
            raise translate_error(e) from e
        except BaseException:
            self._rollback(conn)
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise translate_error(e) from e

    def _rollback(self, conn: sqlite3.Connection):
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    # ==================== Accounts ====================

    def create_account(self, conn: sqlite3.Connection, balance: Decimal, label: str = None) -> int:
        now = utc_now()
        balance = to_money(balance)
        cursor = conn.execute(
            """
            INSERT INTO accounts (label, balance, initial_balance, version, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?)
        """,
            (label, balance, balance, now, now),
        )
        return cursor.lastrowid

    def fetch_account(self, account_id: int, conn: sqlite3.Connection = None) -> Optional[Dict]:
        conn = conn or self._get_connection()
        row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return dict(row) if row else None

    def update_account_balance(
        self, conn: sqlite3.Connection, account_id: int, balance: Decimal, expected_version: int
    ) -> bool:
        """Compare-and-set on the version column. False when another writer won."""
        balance = to_money(balance)
        cursor = conn.execute(
            """
            UPDATE accounts
            SET balance = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?
        """,
            (balance, utc_now(), account_id, expected_version),
        )
        return cursor.rowcount == 1

    # ==================== Ledger ====================

    def insert_ledger_entry(
        self,
        conn: sqlite3.Connection,
        account_id: int,
        entry_type: str,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        game_id: int = None,
        wager_id: str = None,
        description: str = None,
    ) -> Dict:
        now = utc_now()
        amount, balance_before, balance_after = (
            to_money(amount), to_money(balance_before), to_money(balance_after)
        )
        cursor = conn.execute(
            """
            INSERT INTO ledger_entries
                (account_id, game_id, wager_id, entry_type, amount,
                 balance_before, balance_after, description, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                account_id,
                game_id,
                wager_id,
                entry_type,
                amount,
                balance_before,
                balance_after,
                description,
                now,
            ),
        )
        return {
            "id": cursor.lastrowid,
            "account_id": account_id,
            "game_id": game_id,
            "wager_id": wager_id,
            "entry_type": entry_type,
            "amount": str(amount),
            "balance_before": str(balance_before),
            "balance_after": str(balance_after),
            "description": description,
            "created_at": now,
        }

    def get_ledger_entries(
        self, account_id: int, limit: int = None, newest_first: bool = True
    ) -> List[Dict]:
        conn = self._get_connection()
        order = "DESC" if newest_first else "ASC"
        query = f"SELECT * FROM ledger_entries WHERE account_id = ? ORDER BY id {order}"
        params: tuple = (account_id,)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        return [dict(row) for row in conn.execute(query, params).fetchall()]

    def count_ledger_entries(self, account_id: int) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM ledger_entries WHERE account_id = ?", (account_id,)
        ).fetchone()
        return row["n"]

    def find_orphaned_wagers(self) -> List[Dict]:
        """Bet entries whose wager has neither a result nor an open hand."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT DISTINCT le.wager_id, le.account_id
            FROM ledger_entries le
            WHERE le.entry_type = 'bet'
              AND le.wager_id IS NOT NULL
              AND NOT EXISTS (SELECT 1 FROM game_results gr WHERE gr.wager_id = le.wager_id)
              AND NOT EXISTS (
                  SELECT 1 FROM blackjack_hands h
                  WHERE h.id = le.wager_id AND h.state = 'awaiting_action'
              )
        """
        ).fetchall()
        return [dict(row) for row in rows]

    # ==================== Game Results ====================

    def insert_game_result(
        self,
        conn: sqlite3.Connection,
        wager_id: str,
        account_id: int,
        game_id: int,
        stake: Decimal,
        payout: Decimal,
        outcome: Dict[str, Any],
        result: str,
    ) -> Dict:
        now = utc_now()
        stake, payout = to_money(stake), to_money(payout)
        cursor = conn.execute(
            """
            INSERT INTO game_results
                (wager_id, account_id, game_id, stake, payout, outcome, result, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                wager_id,
                account_id,
                game_id,
                stake,
                payout,
                orjson.dumps(outcome, default=str).decode("utf-8"),
                result,
                now,
            ),
        )
        return {
            "id": cursor.lastrowid,
            "wager_id": wager_id,
            "account_id": account_id,
            "game_id": game_id,
            "stake": str(stake),
            "payout": str(payout),
            "outcome": outcome,
            "result": result,
            "created_at": now,
        }

    def get_game_results(self, account_id: int, limit: int = 50) -> List[Dict]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM game_results WHERE account_id = ?
            ORDER BY id DESC LIMIT ?
        """,
            (account_id, limit),
        ).fetchall()
        results = []
        for row in rows:
            data = dict(row)
            data["outcome"] = orjson.loads(data["outcome"])
            results.append(data)
        return results

    def count_game_results(self, account_id: int) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM game_results WHERE account_id = ?", (account_id,)
        ).fetchone()
        return row["n"]

    def get_result_amounts(self, account_id: int = None) -> List[Dict]:
        """Stake/payout rows for aggregation, read in a single statement."""
        conn = self._get_connection()
        query = "SELECT account_id, game_id, stake, payout, result FROM game_results"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        return [dict(row) for row in conn.execute(query, params).fetchall()]

    # ==================== Games ====================

    def create_game(
        self,
        name: str,
        game_type: str,
        min_bet: Decimal,
        max_bet: Decimal,
        rtp: Decimal,
        is_active: bool = True,
        rules: Dict[str, Any] = None,
    ) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO games (name, game_type, min_bet, max_bet, rtp, is_active, rules, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    name,
                    game_type,
                    min_bet,
                    max_bet,
                    rtp,
                    1 if is_active else 0,
                    orjson.dumps(rules or {}, default=str).decode("utf-8"),
                    utc_now(),
                ),
            )
            return cursor.lastrowid

    def _game_from_row(self, row: sqlite3.Row) -> Dict:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        data["rules"] = orjson.loads(data["rules"])
        data.pop("created_at", None)
        return data

    def get_game(self, game_id: int) -> Optional[Dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM games WHERE id = ?", (game_id,)).fetchone()
        return self._game_from_row(row) if row else None

    def list_games(self, active_only: bool = True) -> List[Dict]:
        conn = self._get_connection()
        query = "SELECT * FROM games"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"
        return [self._game_from_row(row) for row in conn.execute(query).fetchall()]

    def set_game_active(self, game_id: int, active: bool):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE games SET is_active = ? WHERE id = ?", (1 if active else 0, game_id)
            )

    def count_games(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) AS n FROM games").fetchone()["n"]

    # ==================== Blackjack Hands ====================

    def insert_hand(
        self,
        conn: sqlite3.Connection,
        hand_id: str,
        account_id: int,
        game_id: int,
        stake: Decimal,
        deck: List[str],
        player_cards: List[str],
        dealer_cards: List[str],
        state: str,
        result: str = None,
        doubled: bool = False,
    ):
        now = utc_now()
        conn.execute(
            """
            INSERT INTO blackjack_hands
                (id, account_id, game_id, stake, deck, player_cards, dealer_cards,
                 doubled, state, result, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                hand_id,
                account_id,
                game_id,
                to_money(stake),
                orjson.dumps(deck).decode("utf-8"),
                orjson.dumps(player_cards).decode("utf-8"),
                orjson.dumps(dealer_cards).decode("utf-8"),
                1 if doubled else 0,
                state,
                result,
                now,
                now,
            ),
        )

    def fetch_hand(self, hand_id: str, conn: sqlite3.Connection = None) -> Optional[Dict]:
        conn = conn or self._get_connection()
        row = conn.execute("SELECT * FROM blackjack_hands WHERE id = ?", (hand_id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        for key in ("deck", "player_cards", "dealer_cards"):
            data[key] = orjson.loads(data[key])
        data["doubled"] = bool(data["doubled"])
        return data

    def update_hand(
        self,
        conn: sqlite3.Connection,
        hand_id: str,
        stake: Decimal,
        deck: List[str],
        player_cards: List[str],
        dealer_cards: List[str],
        state: str,
        result: str = None,
        doubled: bool = False,
    ):
        conn.execute(
            """
            UPDATE blackjack_hands
            SET stake = ?, deck = ?, player_cards = ?, dealer_cards = ?,
                doubled = ?, state = ?, result = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                to_money(stake),
                orjson.dumps(deck).decode("utf-8"),
                orjson.dumps(player_cards).decode("utf-8"),
                orjson.dumps(dealer_cards).decode("utf-8"),
                1 if doubled else 0,
                state,
                result,
                utc_now(),
                hand_id,
            ),
        )

    def get_stale_hands(self, older_than: str) -> List[Dict]:
        """Open hands not touched since the `older_than` ISO timestamp."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT id, account_id, updated_at FROM blackjack_hands
            WHERE state = 'awaiting_action' AND updated_at < ?
            ORDER BY updated_at
        """,
            (older_than,),
        ).fetchall()
        return [dict(row) for row in rows]
