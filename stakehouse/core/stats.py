"""
Read-only rollups over persisted game results.

Amounts are stored as TEXT, so sums are taken in Python over rows fetched
with a single SELECT. That read sees one consistent snapshot and may trail
the newest settlement slightly.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from stakehouse.core.catalog import GameCatalog
from stakehouse.core.database import Database
from stakehouse.core.exceptions import UnknownAccount, UnknownGame
from stakehouse.core.logger import get_logger
from stakehouse.core.money import ZERO

logger = get_logger("stats")

PERCENT = Decimal("0.01")


def win_rate(total_win: Decimal, total_stake: Decimal) -> Decimal:
    """Payout as a percentage of stake, 0 when nothing was staked."""
    if total_stake <= 0:
        return ZERO
    return (total_win / total_stake * 100).quantize(PERCENT, rounding=ROUND_HALF_UP)


@dataclass
class AccountStats:
    account_id: Optional[int]
    total_games: int
    total_win_amount: Decimal
    total_stake_amount: Decimal
    win_rate: Decimal

    @classmethod
    def from_rows(cls, account_id: Optional[int], rows: Iterable[Dict]) -> "AccountStats":
        games = 0
        stake = ZERO
        won = ZERO
        for row in rows:
            games += 1
            stake += Decimal(row["stake"])
            won += Decimal(row["payout"])
        return cls(account_id, games, won, stake, win_rate(won, stake))

    def to_dict(self) -> Dict:
        return {
            "total_games": self.total_games,
            "total_win_amount": str(self.total_win_amount),
            "total_stake_amount": str(self.total_stake_amount),
            "win_rate": str(self.win_rate),
        }


class StatsAggregator:
    def __init__(self, database: Database, catalog: GameCatalog, leaderboard_size: int = 10):
        self.db = database
        self.catalog = catalog
        self.leaderboard_size = leaderboard_size
        self._snapshot: Optional[Dict] = None
        self._lock = threading.Lock()

    def compute_stats(self, account_id: int) -> AccountStats:
        """Totals over every settled game of one account."""
        if self.db.fetch_account(account_id) is None:
            raise UnknownAccount(f"Account {account_id} not found", account_id=account_id)
        return AccountStats.from_rows(account_id, self.db.get_result_amounts(account_id))

    def recent_results(self, account_id: int, limit: int = 50) -> List[Dict]:
        if self.db.fetch_account(account_id) is None:
            raise UnknownAccount(f"Account {account_id} not found", account_id=account_id)
        return self.db.get_game_results(account_id, limit=limit)

    def game_breakdown(self, account_id: int = None) -> List[Dict]:
        """Per game totals, most played first. Platform wide when no account is given."""
        if account_id is not None and self.db.fetch_account(account_id) is None:
            raise UnknownAccount(f"Account {account_id} not found", account_id=account_id)

        per_game: Dict[int, List[Dict]] = OrderedDict()
        for row in self.db.get_result_amounts(account_id):
            per_game.setdefault(row["game_id"], []).append(row)

        breakdown = []
        for game_id, rows in per_game.items():
            stats = AccountStats.from_rows(account_id, rows)
            try:
                name = self.catalog.get(game_id).name
            except UnknownGame:
                name = None
            breakdown.append(
                {
                    "game_id": game_id,
                    "game": name,
                    "plays": stats.total_games,
                    "total_wagered": str(stats.total_stake_amount),
                    "total_won": str(stats.total_win_amount),
                    "biggest_win": str(max(Decimal(r["payout"]) for r in rows)),
                    "win_rate": str(stats.win_rate),
                }
            )
        breakdown.sort(key=lambda item: item["plays"], reverse=True)
        return breakdown

    def leaderboard(self, limit: int = None) -> List[Dict]:
        """Accounts ranked by net winnings (payouts minus stakes)."""
        limit = limit or self.leaderboard_size
        totals: Dict[int, Dict] = {}
        for row in self.db.get_result_amounts():
            entry = totals.setdefault(
                row["account_id"],
                {"wagered": ZERO, "won": ZERO, "biggest": ZERO, "games": 0},
            )
            payout = Decimal(row["payout"])
            entry["wagered"] += Decimal(row["stake"])
            entry["won"] += payout
            entry["biggest"] = max(entry["biggest"], payout)
            entry["games"] += 1

        ranked = sorted(
            totals.items(), key=lambda item: (item[1]["won"] - item[1]["wagered"], -item[0]), reverse=True
        )
        return [
            {
                "rank": position,
                "account_id": account_id,
                "net": str(entry["won"] - entry["wagered"]),
                "total_won": str(entry["won"]),
                "total_wagered": str(entry["wagered"]),
                "biggest_win": str(entry["biggest"]),
                "games_played": entry["games"],
            }
            for position, (account_id, entry) in enumerate(ranked[:limit], start=1)
        ]

    # ==================== Cached platform snapshot ====================

    def refresh_snapshot(self) -> Dict:
        platform = AccountStats.from_rows(None, self.db.get_result_amounts())
        house_edge = Decimal("100.00") - platform.win_rate if platform.total_stake_amount > 0 else ZERO
        snapshot = {
            **platform.to_dict(),
            "house_edge": str(house_edge),
            "leaderboard": self.leaderboard(),
            "refreshed_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._snapshot = snapshot
        logger.debug(f"Stats snapshot refreshed: {platform.total_games} games")
        return snapshot

    def platform_snapshot(self) -> Dict:
        """Last refreshed snapshot, computed on first use."""
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            snapshot = self.refresh_snapshot()
        return snapshot
