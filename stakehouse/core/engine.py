"""
Wires the settlement components together over one database.

The HTTP app builds a single engine at startup; tests build their own
against a temporary database file.
"""

import time
from pathlib import Path
from typing import Callable, Dict, List

from stakehouse.config import AppConfig, settings
from stakehouse.core.blackjack_table import BlackjackTable
from stakehouse.core.catalog import GameCatalog
from stakehouse.core.database import Database
from stakehouse.core.ledger import AccountLedger
from stakehouse.core.logger import get_logger
from stakehouse.core.rng import RandomSourceFactory, system_random_factory
from stakehouse.core.settlement import SettlementCoordinator
from stakehouse.core.stats import StatsAggregator

logger = get_logger("engine")


class SettlementEngine:
    def __init__(
        self,
        db_path: Path = None,
        config: AppConfig = None,
        rng_factory: RandomSourceFactory = system_random_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or settings
        self.db = Database(
            db_path or self.config.paths.get_db_path(),
            busy_timeout_ms=self.config.settlement.busy_timeout_ms,
        )
        self.catalog = GameCatalog(self.db)
        self.ledger = AccountLedger(self.db, starting_balance=self.config.economy.starting_balance)
        self.coordinator = SettlementCoordinator(
            self.db,
            self.ledger,
            self.catalog,
            rng_factory=rng_factory,
            max_retries=self.config.settlement.max_retries,
            timeout_seconds=self.config.settlement.timeout_seconds,
            clock=clock,
        )
        self.blackjack = BlackjackTable(self.coordinator)
        self.stats = StatsAggregator(
            self.db, self.catalog, leaderboard_size=self.config.stats.leaderboard_size
        )

    def startup(self, seed_games: bool = True):
        """Seed the catalog, check for half-finished wagers, warm the stats cache."""
        if seed_games:
            self.catalog.seed_defaults()
        self.audit_orphans()
        self.stats.refresh_snapshot()

    def audit_orphans(self) -> List[Dict]:
        """
        Bets with no result and no open hand. A committed settlement always
        writes both, so any hit here points at data edited outside the engine.
        """
        orphans = self.db.find_orphaned_wagers()
        for orphan in orphans:
            logger.warning(
                f"Orphaned wager {orphan['wager_id']}",
                extra={"wager_id": orphan["wager_id"], "account_id": orphan["account_id"]},
            )
        if not orphans:
            logger.info("Wager audit clean")
        return orphans

    def close(self):
        self.db.close()
