from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from stakehouse.core.catalog import GameDefinition, SlotRules
from stakehouse.core.rng import RandomSource


@dataclass
class SlotOutcome:
    """Result of one spin. `grid` holds one list per reel, top row first."""

    grid: List[List[str]]
    counts: Dict[str, int]
    winning_symbol: Optional[str] = None
    match_count: int = 0
    base_multiplier: Decimal = Decimal("0")
    amplifier: Decimal = Decimal("0")
    multiplier: Decimal = Decimal("0")
    game_type: str = field(default="slots", init=False)
    is_terminal: bool = field(default=True, init=False)

    @property
    def classification(self) -> str:
        return "win" if self.multiplier > 0 else "loss"

    def payload(self) -> Dict:
        return {
            "reels": self.grid,
            "winning_symbol": self.winning_symbol,
            "match_count": self.match_count,
            "multiplier": str(self.multiplier),
        }


class SlotsGame:
    """
    Count-based slot machine.
    Symbols are drawn per cell; the most frequent symbol on the whole grid
    decides the win, so a single-row machine follows the same rule.
    """

    def _spin_reel(self, rules: SlotRules, weights: List[int], rng: RandomSource) -> List[str]:
        """Draw one symbol per row for a single reel."""
        if rules.weights is None:
            return [rng.random_choice(rules.symbols) for _ in range(rules.rows)]
        return [rng.weighted_choice(rules.symbols, weights) for _ in range(rules.rows)]

    def _calculate_multiplier(self, grid: List[List[str]], rules: SlotRules) -> SlotOutcome:
        # Counter keeps first-seen order, which breaks ties between symbols
        counts = Counter(symbol for reel in grid for symbol in reel)
        max_count = max(counts.values())

        if max_count < rules.win_threshold:
            return SlotOutcome(grid=grid, counts=dict(counts), match_count=max_count)

        winning_symbol = next(s for s, c in counts.items() if c == max_count)
        base = rules.paytable[winning_symbol]
        amplifier = rules.amplifier_for(max_count)

        return SlotOutcome(
            grid=grid,
            counts=dict(counts),
            winning_symbol=winning_symbol,
            match_count=max_count,
            base_multiplier=base,
            amplifier=amplifier,
            multiplier=base * amplifier,
        )

    def resolve(self, definition: GameDefinition, rng: RandomSource) -> SlotOutcome:
        """
        Spin the machine described by `definition`.

        Args:
            definition: Catalog entry with slot rules
            rng: Source of randomness, consumed one draw per grid cell

        Returns:
            SlotOutcome with the drawn grid and final multiplier
        """
        rules = definition.slot_rules()
        weights = rules.symbol_weights()
        grid = [self._spin_reel(rules, weights, rng) for _ in range(rules.reels)]
        return self._calculate_multiplier(grid, rules)

    def simulate_return(
        self, definition: GameDefinition, rng: RandomSource, rounds: int = 10000
    ) -> Decimal:
        """Realised return-to-player percentage over `rounds` unit-stake spins."""
        if rounds <= 0:
            raise ValueError("rounds must be positive")
        returned = sum(
            (self.resolve(definition, rng).multiplier for _ in range(rounds)), Decimal("0")
        )
        return (returned / rounds * 100).quantize(Decimal("0.01"))


# Singleton instance
slots_game = SlotsGame()
