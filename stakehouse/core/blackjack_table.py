"""
Player actions on open blackjack hands.

A hand is dealt by the settlement coordinator and stored under its wager
id. Each action here loads the hand inside a write transaction, applies the
move, and writes the new hand state together with any ledger entries and
the game result, so a hand can never be settled twice.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Tuple

from stakehouse.core.exceptions import HandAlreadySettled, HandNotFound, InvalidHandAction, WagerError
from stakehouse.core.games.blackjack import SETTLED, BlackjackRound, blackjack_game
from stakehouse.core.ledger import LedgerEntryDraft
from stakehouse.core.logger import get_logger
from stakehouse.core.settlement import (
    SettlementCoordinator,
    SettlementResult,
    WagerContext,
    WagerState,
    blackjack_view,
)

logger = get_logger("blackjack")

ACTIONS = ("hit", "stand", "double")


class BlackjackTable:
    def __init__(self, coordinator: SettlementCoordinator):
        self.coordinator = coordinator
        self.db = coordinator.db
        self.catalog = coordinator.catalog

    def deal(self, account_id: int, game_id: int, stake) -> Dict:
        return self.coordinator.resolve_blackjack_deal(account_id, game_id, stake)

    def hit(self, account_id: int, hand_id: str) -> Dict:
        return self.act(account_id, hand_id, "hit")

    def stand(self, account_id: int, hand_id: str) -> Dict:
        return self.act(account_id, hand_id, "stand")

    def double(self, account_id: int, hand_id: str) -> Dict:
        return self.act(account_id, hand_id, "double")

    def act(self, account_id: int, hand_id: str, action: str) -> Dict:
        """
        Apply `action` to an open hand owned by `account_id`.

        Raises:
            HandNotFound: unknown hand, or one belonging to another account.
            HandAlreadySettled: the hand already has a result.
            InvalidHandAction: unknown action, or a double that is not allowed.
            InsufficientFunds: not enough balance to double.
        """
        if action not in ACTIONS:
            raise InvalidHandAction(f"Unknown action '{action}'", action=action)

        result = self.coordinator.run_with_retries(
            lambda attempt: self._act_once(account_id, hand_id, action, attempt)
        )
        return blackjack_view(result)

    def _act_once(self, account_id: int, hand_id: str, action: str, attempt: int) -> SettlementResult:
        hand_row = self._peek(hand_id, account_id)
        ctx = WagerContext(hand_id, account_id, hand_row["game_id"], attempt)
        definition = self.catalog.get(hand_row["game_id"])
        rules = definition.blackjack_rules()

        with self.coordinator.unit_of_work(ctx) as conn:
            # Loaded again under the write lock, so two actions cannot both see it open
            row, hand = self._load(conn, hand_id, account_id)
            stake = Decimal(row["stake"])
            self.coordinator.transition(ctx, WagerState.VALIDATED, action=action)

            drafts = []
            if action == "hit":
                hand = blackjack_game.hit(hand, rules)
            elif action == "stand":
                hand = blackjack_game.stand(hand, rules)
            else:
                hand = blackjack_game.double(hand, rules)
                drafts.append(
                    LedgerEntryDraft.bet(stake, definition.id, hand_id, f"{definition.name} double")
                )
                stake = stake * 2
            self.coordinator.transition(ctx, WagerState.OUTCOME_RESOLVED, terminal=hand.is_terminal)

            payout, balance, entries = self.coordinator.record(
                conn, ctx, definition, stake, hand, drafts
            )
            self._save(conn, hand_id, stake, hand)

        return self.coordinator.finish(ctx, definition, stake, hand, payout, balance, entries)

    def _peek(self, hand_id: str, account_id: int) -> Dict:
        row = self.db.fetch_hand(hand_id)
        if row is None or row["account_id"] != account_id:
            raise HandNotFound(f"Hand {hand_id} not found", hand_id=hand_id)
        return row

    def _load(self, conn: sqlite3.Connection, hand_id: str, account_id: int) -> Tuple[Dict, BlackjackRound]:
        row = self.db.fetch_hand(hand_id, conn)
        if row is None or row["account_id"] != account_id:
            raise HandNotFound(f"Hand {hand_id} not found", hand_id=hand_id)
        if row["state"] == SETTLED:
            raise HandAlreadySettled("Hand already completed", hand_id=hand_id)
        hand = BlackjackRound.from_state(
            row["player_cards"],
            row["dealer_cards"],
            row["deck"],
            doubled=row["doubled"],
            state=row["state"],
            result=row["result"],
        )
        return row, hand

    def _save(self, conn: sqlite3.Connection, hand_id: str, stake: Decimal, hand: BlackjackRound):
        state = hand.to_state()
        self.db.update_hand(
            conn,
            hand_id,
            stake=stake,
            deck=state["deck"],
            player_cards=state["player_cards"],
            dealer_cards=state["dealer_cards"],
            state=state["state"],
            result=state["result"],
            doubled=state["doubled"],
        )

    def get_hand(self, account_id: int, hand_id: str) -> Dict:
        """Player view of a stored hand."""
        row = self._peek(hand_id, account_id)
        hand = BlackjackRound.from_state(
            row["player_cards"],
            row["dealer_cards"],
            row["deck"],
            doubled=row["doubled"],
            state=row["state"],
            result=row["result"],
        )
        view = hand.payload()
        # Multipliers are not stored with the hand
        view.pop("multiplier", None)
        view.update({"hand_id": hand_id, "stake": row["stake"]})
        return view

    # ==================== Expiry ====================

    def expire_stale(self, max_age_seconds: int, now: datetime = None) -> List[str]:
        """Stand every open hand untouched for `max_age_seconds`. Returns the hand ids stood."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=max_age_seconds)).isoformat(timespec="microseconds")

        stood = []
        for row in self.db.get_stale_hands(cutoff):
            try:
                self.act(row["account_id"], row["id"], "stand")
            except HandAlreadySettled:
                # The player acted between the scan and the stand
                continue
            except WagerError as e:
                logger.error(f"Could not expire hand {row['id']}: {e.message}", extra={"hand_id": row["id"]})
                continue
            stood.append(row["id"])

        if stood:
            logger.info(f"Auto-stood {len(stood)} stale blackjack hands")
        return stood
