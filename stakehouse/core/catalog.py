"""
Game catalog: typed game definitions and read access to the `games` table.

Definitions are owned by an external catalog admin. The settlement engine
only reads them; `add_game`, `set_active` and `seed_defaults` exist so a
fresh database has something to play and tests can set up fixtures.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stakehouse.core.exceptions import GameConfigurationError, GameInactive, UnknownGame
from stakehouse.core.logger import get_logger

logger = get_logger("catalog")

GAME_TYPES = ("slots", "blackjack", "roulette")


# ==================== Rule Models ====================

class SlotRules(BaseModel):
    """
    Reel layout and paytable for a slot machine.

    The grid is `reels` columns by `rows` cells. A spin wins when some symbol
    appears at least `win_threshold` times anywhere on the grid.
    """

    reels: int = Field(5, ge=1)
    rows: int = Field(1, ge=1)
    symbols: List[str] = Field(default_factory=list)
    weights: Optional[Dict[str, int]] = None  # None means uniform
    paytable: Dict[str, Decimal] = Field(default_factory=dict)
    win_threshold: int = Field(3, ge=1)
    count_amplifiers: Optional[Dict[int, Decimal]] = None

    @model_validator(mode="after")
    def _check_layout(self):
        if not self.symbols:
            raise ValueError("slot machine has no symbols")
        if len(set(self.symbols)) != len(self.symbols):
            raise ValueError("slot symbols must be unique")

        missing = [s for s in self.symbols if s not in self.paytable]
        if missing:
            raise ValueError(f"paytable is missing symbols: {', '.join(missing)}")
        if any(m < 0 for m in self.paytable.values()):
            raise ValueError("paytable multipliers must be >= 0")

        if self.weights is not None:
            unknown = set(self.weights) - set(self.symbols)
            if unknown:
                raise ValueError(f"weights reference unknown symbols: {', '.join(sorted(unknown))}")
            if any(w < 0 for w in self.weights.values()):
                raise ValueError("symbol weights must be >= 0")
            if sum(self.symbol_weights()) == 0:
                raise ValueError("slot machine has no drawable symbols")

        if self.win_threshold > self.grid_size:
            raise ValueError(
                f"win_threshold {self.win_threshold} exceeds grid size {self.grid_size}"
            )
        if self.count_amplifiers is not None:
            if any(count < self.win_threshold for count in self.count_amplifiers):
                raise ValueError("count_amplifiers cannot start below win_threshold")
            if self.win_threshold not in self.count_amplifiers:
                raise ValueError(
                    f"count_amplifiers needs a step for win_threshold {self.win_threshold}"
                )
            if any(a < 0 for a in self.count_amplifiers.values()):
                raise ValueError("count_amplifiers must be >= 0")
        return self

    @property
    def grid_size(self) -> int:
        return self.reels * self.rows

    def symbol_weights(self) -> List[int]:
        """Weights aligned with `symbols`; unlisted symbols are never drawn."""
        if self.weights is None:
            return [1] * len(self.symbols)
        return [self.weights.get(symbol, 0) for symbol in self.symbols]

    def amplifier_table(self) -> Dict[int, Decimal]:
        if self.count_amplifiers:
            return dict(sorted(self.count_amplifiers.items()))

        threshold = self.win_threshold
        table = {threshold: Decimal("1")}
        if threshold + 1 <= self.grid_size:
            table[threshold + 1] = Decimal("2")
        # Full grid gets the top step only once threshold and threshold + 1 are below it
        if self.grid_size > threshold + 1:
            table[self.grid_size] = Decimal("5")
        return table

    def amplifier_for(self, count: int) -> Decimal:
        """Highest amplifier step not above `count`; 0 below the threshold."""
        amplifier = Decimal("0")
        for step, value in self.amplifier_table().items():
            if count >= step:
                amplifier = value
        return amplifier


class BlackjackRules(BaseModel):
    decks: int = Field(1, ge=1, le=8)
    natural_payout: Decimal = Decimal("1.5")  # 3:2
    win_payout: Decimal = Decimal("1")  # even money
    dealer_stands_on: int = Field(17, ge=12, le=21)
    allow_double: bool = True

    @field_validator("natural_payout", "win_payout")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("payout ratios must be >= 0")
        return value


# ==================== Game Definition ====================

class GameDefinition(BaseModel):
    id: Optional[int] = None
    name: str
    game_type: str
    min_bet: Decimal
    max_bet: Decimal
    rtp: Decimal = Decimal("95.00")
    is_active: bool = True
    rules: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("game_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in GAME_TYPES:
            raise ValueError(f"unknown game type '{value}'")
        return value

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_bet <= 0:
            raise ValueError("min_bet must be positive")
        if self.max_bet < self.min_bet:
            raise ValueError("max_bet must be >= min_bet")
        return self

    def slot_rules(self) -> SlotRules:
        return self._parse_rules(SlotRules)

    def blackjack_rules(self) -> BlackjackRules:
        return self._parse_rules(BlackjackRules)

    def _parse_rules(self, model):
        try:
            return model.model_validate(self.rules)
        except ValidationError as e:
            first = e.errors()[0]["msg"]
            raise GameConfigurationError(
                f"Invalid rules for '{self.name}': {first}", game_id=self.id
            ) from e

    def validate_rules(self):
        """Parse the type specific rules; raises GameConfigurationError."""
        if self.game_type == "slots":
            self.slot_rules()
        elif self.game_type == "blackjack":
            self.blackjack_rules()

    def to_dict(self) -> Dict[str, Any]:
        # JSON mode renders Decimals as strings
        return self.model_dump(mode="json")


# ==================== Default Catalog ====================

CLASSIC_REEL_RULES = {
    "reels": 5,
    "rows": 1,
    "symbols": ["🍒", "🍋", "🍊", "🍇", "🔔", "💎", "7️⃣"],
    "weights": {"🍒": 28, "🍋": 24, "🍊": 18, "🍇": 14, "🔔": 9, "💎": 5, "7️⃣": 2},
    "paytable": {"🍒": "2", "🍋": "2", "🍊": "3", "🍇": "5", "🔔": "10", "💎": "25", "7️⃣": "100"},
    "win_threshold": 3,
}

DEFAULT_GAMES = [
    {
        "name": "Lucky Sevens",
        "game_type": "slots",
        "min_bet": "0.05",
        "max_bet": "50.00",
        "rtp": "95.50",
        "rules": CLASSIC_REEL_RULES,
    },
    {
        "name": "Mega Fortune",
        "game_type": "slots",
        "min_bet": "0.50",
        "max_bet": "500.00",
        "rtp": "96.60",
        "rules": CLASSIC_REEL_RULES,
    },
    {
        "name": "Classic Blackjack",
        "game_type": "blackjack",
        "min_bet": "5.00",
        "max_bet": "500.00",
        "rtp": "99.50",
        "rules": {"decks": 1, "natural_payout": "1.5", "win_payout": "1", "dealer_stands_on": 17},
    },
    {
        # No outcome generator yet, listed so the lobby shows it as coming soon
        "name": "European Roulette",
        "game_type": "roulette",
        "min_bet": "1.00",
        "max_bet": "1000.00",
        "rtp": "97.30",
        "is_active": False,
    },
]


# ==================== Catalog Access ====================

class GameCatalog:
    """Read access to game definitions stored in the database."""

    def __init__(self, database):
        self.db = database

    def get(self, game_id: int) -> GameDefinition:
        row = self.db.get_game(game_id)
        if row is None:
            raise UnknownGame(f"Game {game_id} not found", game_id=game_id)
        return GameDefinition(**row)

    def get_playable(self, game_id: int, game_type: str = None) -> GameDefinition:
        """Load a game that can take a wager right now."""
        definition = self.get(game_id)
        if game_type is not None and definition.game_type != game_type:
            raise UnknownGame(
                f"Game {game_id} is not a {game_type} game", game_id=game_id
            )
        if not definition.is_active:
            raise GameInactive(f"{definition.name} is currently disabled", game_id=game_id)
        return definition

    def list_games(self, active_only: bool = True) -> List[GameDefinition]:
        return [GameDefinition(**row) for row in self.db.list_games(active_only=active_only)]

    def add_game(self, definition: GameDefinition) -> GameDefinition:
        definition.validate_rules()
        game_id = self.db.create_game(
            name=definition.name,
            game_type=definition.game_type,
            min_bet=definition.min_bet,
            max_bet=definition.max_bet,
            rtp=definition.rtp,
            is_active=definition.is_active,
            rules=definition.rules,
        )
        logger.info(f"Added game '{definition.name}' ({definition.game_type}) as #{game_id}")
        return self.get(game_id)

    def set_active(self, game_id: int, active: bool) -> GameDefinition:
        self.get(game_id)
        self.db.set_game_active(game_id, active)
        return self.get(game_id)

    def seed_defaults(self) -> int:
        """Insert the default games when the catalog is empty. Returns count added."""
        if self.db.count_games() > 0:
            return 0
        for data in DEFAULT_GAMES:
            self.add_game(GameDefinition(**data))
        logger.info(f"Seeded {len(DEFAULT_GAMES)} default games")
        return len(DEFAULT_GAMES)
