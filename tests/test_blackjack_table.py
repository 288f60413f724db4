from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from stakehouse.core.exceptions import (
    HandAlreadySettled,
    HandNotFound,
    InsufficientFunds,
    InvalidHandAction,
)
from stakehouse.core.games.blackjack import blackjack_game

from conftest import stacked_deck


def deal(engine, account_id, *codes, stake="10.00"):
    with patch.object(blackjack_game, "create_deck", return_value=stacked_deck(*codes)):
        return engine.blackjack.deal(account_id, 3, stake)


def entry_types(engine, account_id):
    return [e.entry_type for e in reversed(engine.ledger.list_entries(account_id))]


def test_deal_debits_stake_and_keeps_hand_open(engine, account):
    # Deal order: player, dealer, player, dealer
    hand = deal(engine, account.id, "10♠", "7♣", "6♥", "10♦")

    assert hand["state"] == "awaiting_action"
    assert hand["player_value"] == 16
    assert hand["dealer_upcard"]["display"] == "7♣"
    assert hand["dealer_hidden"] is True
    assert "dealer_cards" not in hand
    assert hand["new_balance"] == "990.00"
    assert hand["result"] is None
    assert entry_types(engine, account.id) == ["bet"]
    assert engine.db.count_game_results(account.id) == 0
    assert engine.audit_orphans() == []


def test_stand_and_win(engine, account):
    hand = deal(engine, account.id, "10♠", "7♣", "9♥", "10♦")
    result = engine.blackjack.stand(account.id, hand["hand_id"])

    assert result["state"] == "settled"
    assert result["hand_result"] == "win"
    assert result["result"] == "win"
    assert result["payout"] == "20.00"
    assert result["new_balance"] == "1010.00"
    assert result["dealer_value"] == 17
    assert entry_types(engine, account.id) == ["bet", "win"]
    assert engine.ledger.audit(account.id).ok


def test_hit_then_bust(engine, account):
    hand = deal(engine, account.id, "10♠", "7♣", "6♥", "10♦", "K♣")
    result = engine.blackjack.hit(account.id, hand["hand_id"])

    assert result["hand_result"] == "bust"
    assert result["result"] == "loss"
    assert result["payout"] == "0.00"
    assert engine.ledger.get_balance(account.id) == Decimal("990.00")
    stored = engine.db.get_game_results(account.id)
    assert stored[0]["result"] == "loss"
    assert stored[0]["wager_id"] == hand["hand_id"]


def test_hit_keeps_hand_open_until_stand(engine, account):
    hand = deal(engine, account.id, "5♠", "7♣", "6♥", "10♦", "2♣")
    after_hit = engine.blackjack.hit(account.id, hand["hand_id"])
    assert after_hit["state"] == "awaiting_action"
    assert after_hit["player_value"] == 13

    result = engine.blackjack.stand(account.id, hand["hand_id"])
    assert result["result"] == "loss"
    assert engine.db.count_game_results(account.id) == 1


def test_double_takes_second_stake(engine, account):
    hand = deal(engine, account.id, "5♠", "7♣", "6♥", "10♦", "10♣")
    result = engine.blackjack.double(account.id, hand["hand_id"])

    assert result["doubled"] is True
    assert result["player_value"] == 21
    assert result["stake"] == "20.00"
    assert result["payout"] == "40.00"
    assert result["new_balance"] == "1020.00"
    assert entry_types(engine, account.id) == ["bet", "bet", "win"]
    assert engine.db.get_game_results(account.id)[0]["stake"] == "20.00"


def test_double_after_hit_rejected(engine, account):
    hand = deal(engine, account.id, "5♠", "7♣", "6♥", "10♦", "2♣", "3♣")
    engine.blackjack.hit(account.id, hand["hand_id"])
    with pytest.raises(InvalidHandAction):
        engine.blackjack.double(account.id, hand["hand_id"])
    assert engine.ledger.get_balance(account.id) == Decimal("990.00")
    assert engine.blackjack.get_hand(account.id, hand["hand_id"])["player_value"] == 13


def test_double_needs_funds(engine):
    account = engine.ledger.open_account("15.00")
    hand = deal(engine, account.id, "5♠", "7♣", "6♥", "10♦", "10♣")
    with pytest.raises(InsufficientFunds):
        engine.blackjack.double(account.id, hand["hand_id"])
    assert engine.ledger.get_balance(account.id) == Decimal("5.00")
    assert engine.blackjack.get_hand(account.id, hand["hand_id"])["state"] == "awaiting_action"


def test_player_natural_pays_three_to_two(engine, account):
    hand = deal(engine, account.id, "A♠", "7♣", "K♥", "9♦")
    assert hand["state"] == "settled"
    assert hand["hand_result"] == "natural"
    assert hand["payout"] == "25.00"
    assert hand["new_balance"] == "1015.00"
    assert engine.db.count_game_results(account.id) == 1


def test_dealer_natural_loses_at_deal(engine, account):
    hand = deal(engine, account.id, "10♠", "A♣", "9♥", "K♦")
    assert hand["hand_result"] == "dealer_natural"
    assert hand["result"] == "loss"
    assert hand["new_balance"] == "990.00"


def test_both_naturals_push(engine, account):
    hand = deal(engine, account.id, "A♠", "A♣", "K♥", "Q♦")
    assert hand["result"] == "push"
    assert hand["payout"] == "10.00"
    assert hand["new_balance"] == "1000.00"
    assert entry_types(engine, account.id) == ["bet", "win"]


def test_settled_hand_rejects_actions(engine, account):
    hand = deal(engine, account.id, "10♠", "7♣", "9♥", "10♦")
    engine.blackjack.stand(account.id, hand["hand_id"])
    with pytest.raises(HandAlreadySettled):
        engine.blackjack.stand(account.id, hand["hand_id"])
    assert engine.db.count_game_results(account.id) == 1


def test_hands_are_private(engine, account):
    hand = deal(engine, account.id, "10♠", "7♣", "6♥", "10♦")
    other = engine.ledger.open_account()
    with pytest.raises(HandNotFound):
        engine.blackjack.hit(other.id, hand["hand_id"])
    with pytest.raises(HandNotFound):
        engine.blackjack.hit(account.id, "no-such-hand")


def test_unknown_action(engine, account):
    hand = deal(engine, account.id, "10♠", "7♣", "6♥", "10♦")
    with pytest.raises(InvalidHandAction):
        engine.blackjack.act(account.id, hand["hand_id"], "split")


def test_stale_hands_are_stood(engine, account):
    stale = deal(engine, account.id, "10♠", "7♣", "9♥", "10♦")
    later = datetime.now(timezone.utc) + timedelta(seconds=700)

    assert engine.blackjack.expire_stale(600, now=datetime.now(timezone.utc)) == []
    assert engine.blackjack.expire_stale(600, now=later) == [stale["hand_id"]]
    assert engine.ledger.get_balance(account.id) == Decimal("1010.00")
    assert engine.blackjack.expire_stale(600, now=later) == []


def test_seeded_deal_is_playable(engine, account):
    hand = engine.coordinator.resolve_blackjack_deal(account.id, 3, "5.00")
    if hand["state"] == "awaiting_action":
        hand = engine.blackjack.stand(account.id, hand["hand_id"])
    assert hand["state"] == "settled"
    assert engine.ledger.audit(account.id).ok
    assert engine.audit_orphans() == []
