from decimal import Decimal

import pytest
from pydantic import ValidationError

from stakehouse.core.catalog import DEFAULT_GAMES, GameDefinition, SlotRules
from stakehouse.core.exceptions import GameConfigurationError, GameInactive, UnknownGame
from stakehouse.core.rng import SeededRandomSource

from conftest import ABC_RULES, ScriptedRandomSource


def test_defaults_seeded_once(engine):
    assert engine.catalog.seed_defaults() == 0
    assert len(engine.catalog.list_games(active_only=False)) == len(DEFAULT_GAMES)


def test_inactive_games_hidden_from_lobby(engine):
    names = [g.name for g in engine.catalog.list_games()]
    assert "European Roulette" not in names
    assert "Classic Blackjack" in names


def test_get_playable(engine):
    with pytest.raises(UnknownGame):
        engine.catalog.get_playable(999)
    with pytest.raises(GameInactive):
        engine.catalog.get_playable(4)
    with pytest.raises(UnknownGame):
        engine.catalog.get_playable(1, "blackjack")
    assert engine.catalog.get_playable(3, "blackjack").name == "Classic Blackjack"


def test_set_active(engine):
    engine.catalog.set_active(1, False)
    with pytest.raises(GameInactive):
        engine.catalog.get_playable(1)
    engine.catalog.set_active(1, True)
    assert engine.catalog.get_playable(1).is_active


def test_rules_round_trip_through_storage(engine, abc_game):
    rules = abc_game.slot_rules()
    assert rules.symbols == ["A", "B", "C"]
    assert rules.paytable["C"] == Decimal("4")
    assert abc_game.to_dict()["min_bet"] == "1.00"


@pytest.mark.parametrize(
    "rules",
    [
        {**ABC_RULES, "symbols": [], "paytable": {}},
        {**ABC_RULES, "paytable": {"A": "2", "B": "3"}},
        {**ABC_RULES, "symbols": ["A", "A", "B"]},
        {**ABC_RULES, "win_threshold": 6},
        {**ABC_RULES, "weights": {"A": 0, "B": 0, "C": 0}},
    ],
)
def test_bad_slot_rules_rejected(engine, rules):
    definition = GameDefinition(
        name="Broken", game_type="slots", min_bet="1", max_bet="2", rules=rules
    )
    with pytest.raises(GameConfigurationError):
        engine.catalog.add_game(definition)


def test_bad_definitions_rejected():
    with pytest.raises(ValidationError):
        GameDefinition(name="Keno", game_type="keno", min_bet="1", max_bet="2")
    with pytest.raises(ValidationError):
        GameDefinition(name="Slots", game_type="slots", min_bet="5", max_bet="2")
    with pytest.raises(ValidationError):
        GameDefinition(name="Slots", game_type="slots", min_bet="0", max_bet="2")


def test_default_amplifiers():
    rules = SlotRules(**ABC_RULES)
    assert rules.amplifier_table() == {3: Decimal("1"), 4: Decimal("2"), 5: Decimal("5")}
    assert rules.amplifier_for(2) == Decimal("0")
    assert rules.amplifier_for(5) == Decimal("5")


def test_custom_amplifiers_use_highest_step():
    rules = SlotRules(**{**ABC_RULES, "count_amplifiers": {3: "1", 5: "10"}})
    assert rules.amplifier_for(4) == Decimal("1")
    assert rules.amplifier_for(5) == Decimal("10")


def test_small_grids_keep_the_threshold_step():
    three = SlotRules(**{**ABC_RULES, "reels": 3})
    assert three.amplifier_table() == {3: Decimal("1")}
    four = SlotRules(**{**ABC_RULES, "reels": 4})
    assert four.amplifier_table() == {3: Decimal("1"), 4: Decimal("2")}
    assert four.amplifier_for(4) == Decimal("2")


def test_custom_amplifiers_need_a_threshold_step():
    with pytest.raises(ValidationError):
        SlotRules(**{**ABC_RULES, "count_amplifiers": {4: "2"}})


# ==================== Random sources ====================

def test_seeded_sources_repeat():
    a = SeededRandomSource(123)
    b = SeededRandomSource(123)
    assert [a.random_int(1, 6) for _ in range(20)] == [b.random_int(1, 6) for _ in range(20)]


def test_shuffle_is_a_permutation():
    items = list(range(52))
    shuffled = SeededRandomSource(1).shuffle(items)
    assert sorted(shuffled) == items
    assert items == list(range(52))


def test_scripted_source_wraps_and_runs_out():
    rng = ScriptedRandomSource([7, 1])
    assert rng.random_int(0, 2) == 1
    assert rng.random_int(10, 20) == 11
    with pytest.raises(IndexError):
        rng.random_int(0, 1)


def test_weighted_choice_skips_zero_weights():
    rng = ScriptedRandomSource([0, 1, 2, 3])
    picks = [rng.weighted_choice(["A", "B", "C"], [1, 0, 3]) for _ in range(4)]
    assert picks == ["A", "C", "C", "C"]
