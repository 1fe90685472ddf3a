"""
Bracket Generator Test Suite.

Pure topology tests: no database involved.
"""
import random
from collections import Counter
from itertools import combinations

import pytest

from tourney.errors import ValidationError, ErrorCode
from tourney.orm.match import BracketType, MatchSlot
from tourney.orm.tournament import TournamentFormat
from tourney.services.bracket_generator import (
    BracketGenerator, standard_seed_order, grand_final_round
)


def simulate(plan, pick_winner):
    """
    Walk a plan in emission order, filling slots from the pointers.

    Returns (losses per participant, winner of each terminal match).
    Fails if a match is reached without both participants.
    """
    slots = {m.key: {MatchSlot.PARTICIPANT1: m.participant1, MatchSlot.PARTICIPANT2: m.participant2}
             for m in plan.matches}
    losses = Counter()
    champions = {}
    for match in plan.matches:
        p1 = slots[match.key][MatchSlot.PARTICIPANT1]
        p2 = slots[match.key][MatchSlot.PARTICIPANT2]
        assert p1 is not None and p2 is not None, f"{match.key} reached with an empty slot"
        winner = pick_winner(match, p1, p2)
        loser = p2 if winner == p1 else p1
        losses[loser] += 1
        if match.next_key:
            assert slots[match.next_key][match.next_slot] is None
            slots[match.next_key][match.next_slot] = winner
        if match.loser_key:
            assert slots[match.loser_key][match.loser_slot] is None
            slots[match.loser_key][match.loser_slot] = loser
        if match.is_terminal:
            champions[match.key] = (winner, loser)
    return losses, champions


def better_seed(match, p1, p2):
    return min(p1, p2)


# =============================================================================
# Seeding
# =============================================================================

class TestSeeding:

    def test_standard_order_of_eight(self):
        assert standard_seed_order(8) == [1, 8, 4, 5, 2, 7, 3, 6]

    def test_standard_order_of_two(self):
        assert standard_seed_order(2) == [1, 2]

    def test_every_pair_sums_to_size_plus_one(self):
        order = standard_seed_order(32)
        for i in range(0, 32, 2):
            assert order[i] + order[i + 1] == 33

    def test_non_power_of_two_rejected(self):
        with pytest.raises(ValidationError):
            standard_seed_order(6)

    def test_grand_final_round(self):
        assert grand_final_round(2) == 2
        assert grand_final_round(4) == 3
        assert grand_final_round(8) == 5


# =============================================================================
# Single elimination
# =============================================================================

class TestSingleElimination:

    @pytest.mark.parametrize("n", range(2, 34))
    def test_match_count_is_n_minus_one(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "single_elimination")
        assert len(plan.matches) == n - 1
        assert len(plan.terminal_matches()) == 1

    def test_four_players_round_one_pairs(self):
        plan = BracketGenerator.generate(["A", "B", "C", "D"], TournamentFormat.SINGLE_ELIMINATION)
        by_key = plan.by_key()
        assert (by_key["W1M0"].participant1, by_key["W1M0"].participant2) == ("A", "D")
        assert (by_key["W1M1"].participant1, by_key["W1M1"].participant2) == ("B", "C")
        assert by_key["W1M0"].next_key == "W2M0"
        assert by_key["W1M0"].next_slot == MatchSlot.PARTICIPANT1
        assert by_key["W1M1"].next_slot == MatchSlot.PARTICIPANT2
        assert by_key["W2M0"].is_terminal

    def test_byes_go_to_top_seeds(self):
        plan = BracketGenerator.generate([1, 2, 3, 4, 5], "single_elimination")
        round_one = [m for m in plan.matches if m.round_number == 1]
        assert len(round_one) == 1
        assert {round_one[0].participant1, round_one[0].participant2} == {4, 5}

        # Seed 1 waits in round 2 for the 4/5 winner; 2 and 3 meet straight away
        round_two = sorted((m for m in plan.matches if m.round_number == 2), key=lambda m: m.position)
        assert round_two[0].participant1 == 1 and round_two[0].participant2 is None
        assert {round_two[1].participant1, round_two[1].participant2} == {2, 3}

    def test_no_loser_routes(self):
        plan = BracketGenerator.generate(list(range(1, 12)), "single_elimination")
        assert all(m.loser_key is None for m in plan.matches)

    @pytest.mark.parametrize("n", [4, 7, 8, 13, 16])
    def test_top_two_seeds_meet_only_in_final(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "single_elimination")
        losses, champions = simulate(plan, better_seed)
        assert list(champions.values()) == [(1, 2)]
        assert sum(losses.values()) == n - 1
        assert all(count == 1 for count in losses.values())

    def test_best_of_carried_to_every_match(self):
        plan = BracketGenerator.generate(list(range(1, 7)), "single_elimination", best_of=3)
        assert {m.best_of for m in plan.matches} == {3}


# =============================================================================
# Double elimination
# =============================================================================

class TestDoubleElimination:

    @pytest.mark.parametrize("n", range(2, 21))
    def test_match_count_is_two_n_minus_two(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "double_elimination")
        assert len(plan.matches) == 2 * n - 2

    @pytest.mark.parametrize("n", range(3, 21))
    def test_every_winners_match_drops_its_loser(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "double_elimination")
        for match in plan.matches:
            if match.bracket_type == BracketType.WINNERS:
                assert match.loser_key is not None, match.key
            else:
                assert match.loser_key is None, match.key

    @pytest.mark.parametrize("n", range(2, 21))
    def test_no_one_loses_more_than_twice(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "double_elimination")
        rng = random.Random(n)
        losses, champions = simulate(plan, lambda m, p1, p2: rng.choice((p1, p2)))

        assert list(champions) == ["GF"]
        finalists = set(champions["GF"])
        assert max(losses.values()) <= 2
        for participant in range(1, n + 1):
            if participant not in finalists:
                assert losses[participant] == 2

    def test_grand_final_shape(self):
        plan = BracketGenerator.generate(list(range(1, 9)), "double_elimination", grand_final_best_of=5)
        final = plan.by_key()["GF"]
        assert final.bracket_type == BracketType.FINALS
        assert final.round_number == grand_final_round(8)
        assert final.best_of == 5
        assert final.is_terminal
        assert plan.by_key()["W3M0"].next_key == "GF"
        assert plan.by_key()["W3M0"].loser_key == "L4M0"
        assert plan.by_key()["L4M0"].next_key == "GF"

    def test_losers_bracket_rounds(self):
        plan = BracketGenerator.generate(list(range(1, 17)), "double_elimination")
        assert plan.rounds(BracketType.WINNERS) == 4
        assert plan.rounds(BracketType.LOSERS) == 6

    def test_first_drop_round_is_mirrored(self):
        plan = BracketGenerator.generate(list(range(1, 9)), "double_elimination")
        by_key = plan.by_key()
        assert by_key["W2M0"].loser_key == "L2M1"
        assert by_key["W2M1"].loser_key == "L2M0"

    def test_two_players_rematch_in_grand_final(self):
        plan = BracketGenerator.generate(["A", "B"], "double_elimination")
        opener = plan.by_key()["W1M0"]
        assert opener.next_key == "GF" and opener.next_slot == MatchSlot.PARTICIPANT1
        assert opener.loser_key == "GF" and opener.loser_slot == MatchSlot.PARTICIPANT2

    def test_better_seeds_reach_grand_final(self):
        plan = BracketGenerator.generate(list(range(1, 12)), "double_elimination")
        _, champions = simulate(plan, better_seed)
        assert champions["GF"] == (1, 2)


# =============================================================================
# Round robin
# =============================================================================

class TestRoundRobin:

    @pytest.mark.parametrize("n", range(2, 11))
    def test_every_pair_meets_exactly_once(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "round_robin")
        pairs = [frozenset((m.participant1, m.participant2)) for m in plan.matches]
        assert len(pairs) == n * (n - 1) // 2
        assert set(pairs) == {frozenset(p) for p in combinations(range(1, n + 1), 2)}

    @pytest.mark.parametrize("n", [4, 5, 8, 9])
    def test_one_match_per_round_per_player(self, n):
        plan = BracketGenerator.generate(list(range(1, n + 1)), "round_robin")
        expected_rounds = n - 1 if n % 2 == 0 else n
        assert plan.rounds() == expected_rounds
        for r in range(1, expected_rounds + 1):
            seen = []
            for m in plan.matches:
                if m.round_number == r:
                    seen.extend([m.participant1, m.participant2])
            assert len(seen) == len(set(seen))

    def test_no_pointers(self):
        plan = BracketGenerator.generate(list(range(1, 7)), "round_robin")
        assert all(m.is_terminal for m in plan.matches)


# =============================================================================
# Validation
# =============================================================================

class TestValidation:

    def test_unknown_format(self):
        with pytest.raises(ValidationError):
            BracketGenerator.generate([1, 2, 3], "swiss")

    def test_fewer_than_two_participants(self):
        with pytest.raises(ValidationError) as exc:
            BracketGenerator.generate([1], "single_elimination")
        assert exc.value.code == ErrorCode.INSUFFICIENT_PARTICIPANTS

    def test_duplicate_participants(self):
        with pytest.raises(ValidationError):
            BracketGenerator.generate([1, 2, 2], "single_elimination")

    def test_empty_reference(self):
        with pytest.raises(ValidationError):
            BracketGenerator.generate([1, None, 3], "double_elimination")

    def test_even_best_of(self):
        with pytest.raises(ValidationError):
            BracketGenerator.generate([1, 2, 3, 4], "single_elimination", best_of=2)

    def test_plan_serializes(self):
        plan = BracketGenerator.generate(["a", "b", "c"], "double_elimination")
        data = plan.to_dict()
        assert data["format"] == "double_elimination"
        assert data["match_count"] == 4
        assert {m["bracket_type"] for m in data["matches"]} == {"winners", "losers", "finals"}
