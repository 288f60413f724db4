from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stakehouse.core.engine import SettlementEngine
from stakehouse.core.exceptions import WagerError
from stakehouse.core.logger import get_logger

logger = get_logger("scheduler")


class EngineScheduler:
    """Background maintenance: stats refresh, stale hand expiry, wager audit."""

    def __init__(self, engine: SettlementEngine):
        self.engine = engine
        self.config = engine.config
        self.scheduler = BackgroundScheduler()

    def start(self):
        # 1. Platform stats snapshot
        self.scheduler.add_job(
            self.refresh_stats,
            IntervalTrigger(seconds=self.config.stats.refresh_seconds),
            id="refresh_stats",
            replace_existing=True,
        )

        # 2. Stand blackjack hands the player walked away from
        self.scheduler.add_job(
            self.expire_hands,
            IntervalTrigger(seconds=self.config.blackjack.sweep_interval_seconds),
            id="expire_hands",
            replace_existing=True,
        )

        # 3. Orphaned wager audit
        self.scheduler.add_job(
            self.audit_wagers,
            IntervalTrigger(hours=1),
            id="audit_wagers",
            replace_existing=True,
        )

        self.scheduler.start()
        logger.info("Engine scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Engine scheduler shutdown")

    def refresh_stats(self):
        try:
            self.engine.stats.refresh_snapshot()
        except WagerError as e:
            logger.error(f"Error refreshing stats: {e.message}")

    def expire_hands(self):
        try:
            self.engine.blackjack.expire_stale(self.config.blackjack.hand_timeout_seconds)
        except WagerError as e:
            logger.error(f"Error expiring hands: {e.message}")

    def audit_wagers(self):
        try:
            self.engine.audit_orphans()
        except WagerError as e:
            logger.error(f"Error auditing wagers: {e.message}")
