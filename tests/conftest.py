import itertools

import pytest

from stakehouse.config import AppConfig
from stakehouse.core.catalog import GameDefinition
from stakehouse.core.engine import SettlementEngine
from stakehouse.core.games.blackjack import Card
from stakehouse.core.rng import RandomSource, SeededRandomSource


def make_config(**overrides) -> AppConfig:
    data = {"settlement": {"busy_timeout_ms": 10000}}
    data.update(overrides)
    return AppConfig(**data)


def seeded_factory(start: int = 1):
    """A different, reproducible seed for every settlement."""
    seeds = itertools.count(start)
    return lambda: SeededRandomSource(next(seeds))


class ScriptedRandomSource(RandomSource):
    """
    Replays a fixed list of integers. Each value is reduced into the
    requested range, so scripts can be written as offsets from min_val.
    """

    def __init__(self, values):
        self._values = list(values)
        self._position = 0

    def random_int(self, min_val: int, max_val: int) -> int:
        if min_val > max_val:
            raise ValueError("min_val must be less than or equal to max_val")
        if self._position >= len(self._values):
            raise IndexError("Scripted random source exhausted")
        value = self._values[self._position]
        self._position += 1
        return min_val + value % (max_val - min_val + 1)

    @property
    def consumed(self) -> int:
        return self._position


def stacked_deck(*codes):
    """Deck that deals `codes` in order (cards are drawn from the end)."""
    return [Card.from_code(code) for code in reversed(codes)]


ABC_RULES = {
    "reels": 5,
    "rows": 1,
    "symbols": ["A", "B", "C"],
    "paytable": {"A": "2", "B": "3", "C": "4"},
    "win_threshold": 3,
}

NEVER_PAYS_RULES = {
    "reels": 5,
    "rows": 1,
    "symbols": ["A", "B"],
    "paytable": {"A": "0", "B": "0"},
}


@pytest.fixture
def engine(tmp_path):
    eng = SettlementEngine(
        db_path=tmp_path / "stakehouse.db",
        config=make_config(),
        rng_factory=seeded_factory(),
    )
    eng.startup()
    yield eng
    eng.close()


@pytest.fixture
def account(engine):
    return engine.ledger.open_account("1000.00")


@pytest.fixture
def slot_game(engine):
    """Seeded slot machine: 5x1 classic reels, bets 0.05 to 50.00."""
    return engine.catalog.get(1)


@pytest.fixture
def blackjack_def(engine):
    return engine.catalog.get(3)


@pytest.fixture
def abc_game(engine):
    return engine.catalog.add_game(
        GameDefinition(
            name="ABC Reels",
            game_type="slots",
            min_bet="1.00",
            max_bet="100.00",
            rules=ABC_RULES,
        )
    )


@pytest.fixture
def losing_game(engine):
    return engine.catalog.add_game(
        GameDefinition(
            name="House Special",
            game_type="slots",
            min_bet="1.00",
            max_bet="100.00",
            rules=NEVER_PAYS_RULES,
        )
    )
