"""
Randomness sources for outcome generation.

Outcome generators never touch a process-global generator: every call
receives a RandomSource. Production uses SystemRandomSource (OS entropy via
`secrets`); tests and replays use SeededRandomSource.
"""

import random
import secrets
from typing import Callable, List, Sequence, TypeVar

T = TypeVar("T")


class RandomSource:
    """
    Minimal interface the games need. Subclasses implement `random_int`;
    everything else is derived from it so that a given integer stream always
    produces the same choices and shuffles.
    """

    def random_int(self, min_val: int, max_val: int) -> int:
        """Returns a random integer in the range [min_val, max_val] (inclusive)."""
        raise NotImplementedError

    def random_choice(self, options: Sequence[T]) -> T:
        """Returns a uniformly chosen element from a non-empty sequence."""
        if not options:
            raise IndexError("Cannot choose from an empty sequence")
        return options[self.random_int(0, len(options) - 1)]

    def weighted_choice(self, options: Sequence[T], weights: Sequence[int]) -> T:
        """Returns an element with probability proportional to its integer weight."""
        if not options or len(options) != len(weights):
            raise ValueError("options and weights must be non-empty and the same length")
        total = sum(weights)
        if total <= 0:
            raise ValueError("weights must sum to a positive value")

        roll = self.random_int(0, total - 1)
        for option, weight in zip(options, weights):
            if roll < weight:
                return option
            roll -= weight
        return options[-1]

    def shuffle(self, items: Sequence[T]) -> List[T]:
        """Returns a new list shuffled with Fisher-Yates."""
        shuffled = list(items)
        for i in range(len(shuffled) - 1, 0, -1):
            j = self.random_int(0, i)
            shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
        return shuffled


class SystemRandomSource(RandomSource):
    """Cryptographically strong randomness from the `secrets` module."""

    def random_int(self, min_val: int, max_val: int) -> int:
        if min_val > max_val:
            raise ValueError("min_val must be less than or equal to max_val")
        return min_val + secrets.randbelow(max_val - min_val + 1)


class SeededRandomSource(RandomSource):
    """Deterministic source for tests and simulations. Not for live play."""

    def __init__(self, seed: int):
        self.seed = seed
        self._random = random.Random(seed)

    def random_int(self, min_val: int, max_val: int) -> int:
        if min_val > max_val:
            raise ValueError("min_val must be less than or equal to max_val")
        return self._random.randint(min_val, max_val)


RandomSourceFactory = Callable[[], RandomSource]


def system_random_factory() -> RandomSource:
    """Default factory: a fresh system source per settlement."""
    return SystemRandomSource()
