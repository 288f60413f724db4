"""Outcome generators. Pure functions of a game definition and a random source."""

from typing import Union

from stakehouse.core.catalog import GameDefinition
from stakehouse.core.exceptions import GameConfigurationError
from stakehouse.core.rng import RandomSource

from .slots import SlotOutcome, SlotsGame, slots_game
from .blackjack import BlackjackGame, BlackjackRound, Card, blackjack_game, hand_value

Outcome = Union[SlotOutcome, BlackjackRound]

_GENERATORS = {
    "slots": slots_game,
    "blackjack": blackjack_game,
}


def resolve(definition: GameDefinition, rng: RandomSource) -> Outcome:
    """Produce an outcome for one round of `definition` using `rng`."""
    generator = _GENERATORS.get(definition.game_type)
    if generator is None:
        raise GameConfigurationError(
            f"No outcome generator for game type '{definition.game_type}'",
            game_id=definition.id,
        )
    return generator.resolve(definition, rng)


__all__ = [
    "Outcome",
    "resolve",
    "SlotOutcome",
    "SlotsGame",
    "slots_game",
    "BlackjackGame",
    "BlackjackRound",
    "Card",
    "blackjack_game",
    "hand_value",
]
