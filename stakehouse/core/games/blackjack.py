from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from stakehouse.core.catalog import BlackjackRules, GameDefinition
from stakehouse.core.exceptions import HandAlreadySettled, InvalidHandAction
from stakehouse.core.rng import RandomSource

SUITS = ["♠", "♥", "♦", "♣"]
RANKS = ["A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K"]

AWAITING_ACTION = "awaiting_action"
SETTLED = "settled"

# Round result -> GameResult classification
CLASSIFICATIONS = {
    "natural": "win",
    "win": "win",
    "dealer_bust": "win",
    "push": "push",
    "loss": "loss",
    "bust": "loss",
    "dealer_natural": "loss",
}


def rank_value(rank: str) -> int:
    """Blackjack value of a rank. Aces count 11 here; hands reduce them."""
    if rank in ("J", "Q", "K"):
        return 10
    if rank == "A":
        return 11
    if rank not in RANKS:
        raise ValueError(f"Unknown rank: {rank!r}")
    return int(rank)


@dataclass(frozen=True)
class Card:
    """Represents a playing card."""

    rank: str
    suit: str

    @property
    def value(self) -> int:
        return rank_value(self.rank)

    @property
    def code(self) -> str:
        return f"{self.rank}{self.suit}"

    @classmethod
    def from_code(cls, code: str) -> "Card":
        return cls(rank=code[:-1], suit=code[-1])

    def to_dict(self) -> Dict:
        return {"rank": self.rank, "suit": self.suit, "display": self.code}

    def __repr__(self):
        return self.code


def _rank_of(card: Union[Card, str]) -> str:
    if isinstance(card, Card):
        return card.rank
    if card and card[-1] in SUITS:
        return card[:-1]
    return card


def hand_value(cards: Iterable[Union[Card, str]]) -> int:
    """
    Best value of a hand. Accepts Card objects, codes ("A♠") or bare ranks.
    Aces start at 11 and drop to 1, one at a time, while the hand is over 21.
    """
    ranks = [_rank_of(card) for card in cards]
    total = sum(rank_value(rank) for rank in ranks)
    aces = ranks.count("A")

    while total > 21 and aces > 0:
        total -= 10
        aces -= 1

    return total


def is_natural(cards: List[Union[Card, str]]) -> bool:
    return len(cards) == 2 and hand_value(cards) == 21


def build_deck(decks: int = 1) -> List[Card]:
    """Unshuffled shoe of `decks` standard 52-card decks."""
    return [Card(rank, suit) for _ in range(decks) for suit in SUITS for rank in RANKS]


@dataclass
class BlackjackRound:
    """
    Full state of one hand. Cards are drawn from the end of `deck`.
    `status` is awaiting_action until the hand has a result.
    """

    player: List[Card]
    dealer: List[Card]
    deck: List[Card]
    doubled: bool = False
    status: str = AWAITING_ACTION
    result: Optional[str] = None
    multiplier: Decimal = Decimal("0")
    game_type: str = field(default="blackjack", init=False)

    @property
    def player_value(self) -> int:
        return hand_value(self.player)

    @property
    def dealer_value(self) -> int:
        return hand_value(self.dealer)

    @property
    def is_natural(self) -> bool:
        return is_natural(self.player)

    @property
    def is_terminal(self) -> bool:
        return self.status == SETTLED

    @property
    def classification(self) -> Optional[str]:
        return CLASSIFICATIONS.get(self.result) if self.result else None

    @property
    def stake_units(self) -> int:
        return 2 if self.doubled else 1

    def to_state(self) -> Dict:
        """Card codes and flags, as stored between player actions."""
        return {
            "player_cards": [c.code for c in self.player],
            "dealer_cards": [c.code for c in self.dealer],
            "deck": [c.code for c in self.deck],
            "doubled": self.doubled,
            "state": self.status,
            "result": self.result,
        }

    @classmethod
    def from_state(
        cls,
        player_cards: List[str],
        dealer_cards: List[str],
        deck: List[str],
        doubled: bool = False,
        state: str = AWAITING_ACTION,
        result: Optional[str] = None,
    ) -> "BlackjackRound":
        return cls(
            player=[Card.from_code(c) for c in player_cards],
            dealer=[Card.from_code(c) for c in dealer_cards],
            deck=[Card.from_code(c) for c in deck],
            doubled=doubled,
            status=state,
            result=result,
        )

    def payload(self) -> Dict:
        """Client view. The dealer hole card stays hidden while the hand is open."""
        data = {
            "player_cards": [c.to_dict() for c in self.player],
            "player_value": self.player_value,
            "is_natural": self.is_natural,
            "dealer_upcard": self.dealer[0].to_dict(),
            "doubled": self.doubled,
            "state": self.status,
        }
        if self.is_terminal:
            data.update(
                {
                    "dealer_cards": [c.to_dict() for c in self.dealer],
                    "dealer_value": self.dealer_value,
                    "dealer_hidden": False,
                    "result": self.result,
                    "multiplier": str(self.multiplier),
                }
            )
        else:
            data["dealer_hidden"] = True
        return data


class BlackjackGame:
    """
    Standard Blackjack rules as pure transitions on BlackjackRound.
    Every method returns a new round; the caller persists it.
    """

    def create_deck(self, rules: BlackjackRules, rng: RandomSource) -> List[Card]:
        """Create and shuffle a fresh shoe."""
        return rng.shuffle(build_deck(rules.decks))

    def resolve(self, definition: GameDefinition, rng: RandomSource) -> BlackjackRound:
        """
        Deal a new hand: player, dealer, player, dealer.
        Naturals are settled immediately, otherwise the hand is left open.
        """
        rules = definition.blackjack_rules()
        deck = self.create_deck(rules, rng)

        player: List[Card] = []
        dealer: List[Card] = []
        player.append(deck.pop())
        dealer.append(deck.pop())
        player.append(deck.pop())
        dealer.append(deck.pop())

        hand = BlackjackRound(player=player, dealer=dealer, deck=deck)

        player_natural = is_natural(player)
        dealer_natural = is_natural(dealer)
        if player_natural and dealer_natural:
            return self._settle(hand, "push", rules)
        if player_natural:
            return self._settle(hand, "natural", rules)
        # Insurance would be offered here in a full implementation
        if dealer_natural:
            return self._settle(hand, "dealer_natural", rules)
        return hand

    def hit(self, hand: BlackjackRound, rules: BlackjackRules) -> BlackjackRound:
        self._require_open(hand)
        hand = self._draw_player(hand)

        if hand.player_value > 21:
            return self._settle(hand, "bust", rules)
        # 21 cannot be improved, stand for the player
        if hand.player_value == 21:
            return self.stand(hand, rules)
        return hand

    def stand(self, hand: BlackjackRound, rules: BlackjackRules) -> BlackjackRound:
        """Player stands. Dealer draws below `dealer_stands_on`, then hands compare."""
        self._require_open(hand)
        dealer = list(hand.dealer)
        deck = list(hand.deck)

        while hand_value(dealer) < rules.dealer_stands_on and deck:
            dealer.append(deck.pop())

        hand = replace(hand, dealer=dealer, deck=deck)
        player_val = hand.player_value
        dealer_val = hand.dealer_value

        if dealer_val > 21:
            outcome = "dealer_bust"
        elif player_val > dealer_val:
            outcome = "win"
        elif player_val < dealer_val:
            outcome = "loss"
        else:
            outcome = "push"
        return self._settle(hand, outcome, rules)

    def double(self, hand: BlackjackRound, rules: BlackjackRules) -> BlackjackRound:
        """Double the stake, take exactly one card, then stand."""
        self._require_open(hand)
        if not rules.allow_double:
            raise InvalidHandAction("Doubling is not allowed at this table")
        if hand.doubled or len(hand.player) != 2:
            raise InvalidHandAction("Can only double on the first two cards")

        hand = replace(self._draw_player(hand), doubled=True)
        if hand.player_value > 21:
            return self._settle(hand, "bust", rules)
        return self.stand(hand, rules)

    def _draw_player(self, hand: BlackjackRound) -> BlackjackRound:
        if not hand.deck:
            raise InvalidHandAction("No cards remaining")
        deck = list(hand.deck)
        card = deck.pop()
        return replace(hand, player=hand.player + [card], deck=deck)

    def _require_open(self, hand: BlackjackRound):
        if hand.is_terminal:
            raise HandAlreadySettled("Hand already completed")

    def _settle(self, hand: BlackjackRound, outcome: str, rules: BlackjackRules) -> BlackjackRound:
        if outcome == "natural":
            multiplier = 1 + rules.natural_payout
        elif outcome in ("win", "dealer_bust"):
            multiplier = 1 + rules.win_payout
        elif outcome == "push":
            multiplier = Decimal("1")  # Stake returned
        else:
            multiplier = Decimal("0")
        return replace(hand, status=SETTLED, result=outcome, multiplier=multiplier)


# Singleton instance
blackjack_game = BlackjackGame()
