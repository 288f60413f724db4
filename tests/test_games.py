import unittest
from decimal import Decimal

from stakehouse.core import games
from stakehouse.core.catalog import CLASSIC_REEL_RULES, BlackjackRules, GameDefinition
from stakehouse.core.exceptions import GameConfigurationError, HandAlreadySettled, InvalidHandAction
from stakehouse.core.games.blackjack import (
    SETTLED,
    BlackjackRound,
    blackjack_game,
    hand_value,
    is_natural,
)
from stakehouse.core.games.slots import slots_game
from stakehouse.core.rng import SeededRandomSource

from conftest import ABC_RULES, ScriptedRandomSource, stacked_deck


def slot_definition(**rules) -> GameDefinition:
    return GameDefinition(
        name="Test Reels",
        game_type="slots",
        min_bet="1",
        max_bet="100",
        rules={**ABC_RULES, **rules},
    )


BLACKJACK = GameDefinition(
    name="Test Blackjack", game_type="blackjack", min_bet="1", max_bet="100", rules={}
)


class TestSlots(unittest.TestCase):
    def spin(self, values, **rules):
        return slots_game.resolve(slot_definition(**rules), ScriptedRandomSource(values))

    def test_three_of_a_kind_pays_base(self):
        outcome = self.spin([0, 0, 0, 1, 2])
        self.assertEqual(outcome.winning_symbol, "A")
        self.assertEqual(outcome.match_count, 3)
        self.assertEqual(outcome.multiplier, Decimal("2"))
        self.assertEqual(outcome.classification, "win")

    def test_four_of_a_kind_doubles(self):
        outcome = self.spin([0, 0, 0, 0, 1])
        self.assertEqual(outcome.multiplier, Decimal("4"))

    def test_three_reel_match_pays_base_multiplier(self):
        outcome = self.spin([0, 0, 0], reels=3, paytable={"A": "5", "B": "3", "C": "4"})
        self.assertEqual(outcome.match_count, 3)
        self.assertEqual(outcome.amplifier, Decimal("1"))
        self.assertEqual(outcome.multiplier, Decimal("5"))

    def test_four_cell_full_grid_doubles(self):
        outcome = self.spin([2, 2, 2, 2], reels=4)
        self.assertEqual(outcome.multiplier, Decimal("8"))

    def test_full_grid_pays_five_times(self):
        outcome = self.spin([1, 1, 1, 1, 1])
        self.assertEqual(outcome.winning_symbol, "B")
        self.assertEqual(outcome.multiplier, Decimal("15"))

    def test_no_triple_pays_nothing(self):
        outcome = self.spin([0, 1, 2, 0, 1])
        self.assertIsNone(outcome.winning_symbol)
        self.assertEqual(outcome.multiplier, Decimal("0"))
        self.assertEqual(outcome.classification, "loss")

    def test_tie_goes_to_first_symbol_drawn(self):
        # 3 reels x 2 rows: B B B then A A A
        outcome = self.spin([1, 1, 1, 0, 0, 0], reels=3, rows=2)
        self.assertEqual(outcome.winning_symbol, "B")
        self.assertEqual(outcome.multiplier, Decimal("3"))
        self.assertEqual(outcome.grid, [["B", "B"], ["B", "A"], ["A", "A"]])

    def test_zero_weight_symbol_never_drawn(self):
        definition = slot_definition(weights={"A": 1, "B": 0, "C": 3})
        rng = SeededRandomSource(3)
        for _ in range(200):
            outcome = slots_game.resolve(definition, rng)
            self.assertNotIn("B", outcome.counts)

    def test_same_seed_same_outcome(self):
        definition = slot_definition()
        first = slots_game.resolve(definition, SeededRandomSource(42))
        second = slots_game.resolve(definition, SeededRandomSource(42))
        self.assertEqual(first.grid, second.grid)
        self.assertEqual(first.multiplier, second.multiplier)

    def test_each_cell_consumes_one_draw(self):
        rng = ScriptedRandomSource([0, 1, 2, 0, 1, 2])
        slots_game.resolve(slot_definition(), rng)
        self.assertEqual(rng.consumed, 5)

    def test_classic_reels_return_below_stake(self):
        definition = GameDefinition(
            name="Lucky Sevens", game_type="slots", min_bet="0.05", max_bet="50",
            rules=CLASSIC_REEL_RULES,
        )
        rtp = slots_game.simulate_return(definition, SeededRandomSource(11), rounds=20000)
        self.assertGreater(rtp, Decimal("85"))
        self.assertLess(rtp, Decimal("100"))

    def test_missing_paytable_entry_is_configuration_error(self):
        definition = slot_definition(paytable={"A": "2", "B": "3"})
        with self.assertRaises(GameConfigurationError):
            slots_game.resolve(definition, ScriptedRandomSource([0] * 5))


class TestBlackjackValues(unittest.TestCase):
    def test_aces_reduce_one_at_a_time(self):
        self.assertEqual(hand_value(["A", "A", "9"]), 21)
        self.assertEqual(hand_value(["A", "A", "A", "A", "7"]), 21)
        self.assertEqual(hand_value(["A", "K", "5"]), 16)

    def test_face_cards_count_ten(self):
        self.assertEqual(hand_value(["K", "Q"]), 20)
        self.assertEqual(hand_value(["J♠", "10♥"]), 20)

    def test_natural(self):
        self.assertTrue(is_natural(["A", "K"]))
        self.assertFalse(is_natural(["7", "7", "7"]))

    def test_unknown_rank(self):
        with self.assertRaises(ValueError):
            hand_value(["Z"])


class TestBlackjackRound(unittest.TestCase):
    def setUp(self):
        self.rules = BlackjackRules()

    def open_hand(self, player, dealer, deck=()):
        return BlackjackRound.from_state(list(player), list(dealer), [c.code for c in stacked_deck(*deck)])

    def test_deal_uses_a_full_deck(self):
        hand = blackjack_game.resolve(BLACKJACK, SeededRandomSource(5))
        self.assertEqual(len(hand.player), 2)
        self.assertEqual(len(hand.dealer), 2)
        self.assertEqual(len(hand.deck), 48)

    def test_deal_is_reproducible(self):
        first = blackjack_game.resolve(BLACKJACK, SeededRandomSource(9))
        second = blackjack_game.resolve(BLACKJACK, SeededRandomSource(9))
        self.assertEqual(first.to_state(), second.to_state())

    def test_dispatch_by_game_type(self):
        hand = games.resolve(BLACKJACK, SeededRandomSource(9))
        self.assertEqual(hand.game_type, "blackjack")

    def test_hit_to_bust(self):
        hand = blackjack_game.hit(self.open_hand(["10♠", "6♥"], ["7♣", "10♦"], ["K♣"]), self.rules)
        self.assertEqual(hand.status, SETTLED)
        self.assertEqual(hand.result, "bust")
        self.assertEqual(hand.multiplier, Decimal("0"))

    def test_hit_to_21_stands_automatically(self):
        hand = blackjack_game.hit(self.open_hand(["10♠", "6♥"], ["7♣", "10♦"], ["5♣"]), self.rules)
        self.assertEqual(hand.player_value, 21)
        self.assertEqual(hand.result, "win")
        self.assertEqual(hand.multiplier, Decimal("2"))

    def test_stand_dealer_draws_to_17(self):
        hand = self.open_hand(["10♠", "8♥"], ["10♣", "6♦"], ["K♠"])
        hand = blackjack_game.stand(hand, self.rules)
        self.assertEqual(hand.result, "dealer_bust")
        self.assertEqual(hand.classification, "win")

    def test_equal_totals_push(self):
        hand = blackjack_game.stand(self.open_hand(["10♠", "7♥"], ["10♣", "7♦"]), self.rules)
        self.assertEqual(hand.result, "push")
        self.assertEqual(hand.multiplier, Decimal("1"))

    def test_double_only_on_two_cards(self):
        hand = self.open_hand(["5♠", "6♥"], ["7♣", "10♦"], ["2♣", "3♣"])
        hand = blackjack_game.hit(hand, self.rules)
        with self.assertRaises(InvalidHandAction):
            blackjack_game.double(hand, self.rules)

    def test_double_disabled_by_rules(self):
        hand = self.open_hand(["5♠", "6♥"], ["7♣", "10♦"], ["10♣"])
        with self.assertRaises(InvalidHandAction):
            blackjack_game.double(hand, BlackjackRules(allow_double=False))

    def test_actions_on_settled_hand(self):
        hand = blackjack_game.stand(self.open_hand(["10♠", "9♥"], ["10♣", "7♦"]), self.rules)
        with self.assertRaises(HandAlreadySettled):
            blackjack_game.hit(hand, self.rules)

    def test_open_hand_hides_hole_card(self):
        payload = self.open_hand(["10♠", "6♥"], ["7♣", "10♦"]).payload()
        self.assertTrue(payload["dealer_hidden"])
        self.assertNotIn("dealer_cards", payload)
        self.assertEqual(payload["dealer_upcard"]["display"], "7♣")


class TestDispatch(unittest.TestCase):
    def test_roulette_has_no_generator(self):
        definition = GameDefinition(
            name="European Roulette", game_type="roulette", min_bet="1", max_bet="10"
        )
        with self.assertRaises(GameConfigurationError):
            games.resolve(definition, SeededRandomSource(1))


if __name__ == "__main__":
    unittest.main()
