"""
Advancement Engine Test Suite.

Exactly-once propagation, slot conflicts, byes, double elimination
drops and the grand final reset.
"""
import pytest
from sqlalchemy import update

from tourney.errors import IntegrityError
from tourney.orm.match import BracketType, Match, MatchSlot, MatchStatus
from tourney.orm.participant import Participant
from tourney.orm.tournament import TournamentFormat, TournamentStatus
from tourney.services.collaborators import EventOutbox
from tourney.services.match_guard import load_match
from tourney.tests.helpers import find_match, play, play_out


async def match_by_key(engine, db, tournament_id, bracket_type, round_number, position=0):
    for match in await engine.orchestrator.list_matches(db, tournament_id):
        if (match.bracket_type, match.round_number, match.bracket_position) == (
                bracket_type, round_number, position):
            return match
    return None


# =============================================================================
# Exactly once
# =============================================================================

class TestExactlyOnce:

    @pytest.fixture
    def semi_played(self, engine, db, build_tournament):
        """4-player bracket where seed 1 has beaten seed 4."""
        async def _build():
            tournament, participants, _ = await build_tournament(players=4)
            a, b, c, d = (p.id for p in participants)
            semi = await find_match(engine, db, tournament.id, a, d)
            await play(engine, db, semi.id, a)
            final = await match_by_key(engine, db, tournament.id, BracketType.WINNERS, 2)
            return dict(tournament_id=tournament.id, a=a, b=b, c=c, d=d, semi_id=semi.id, final_id=final.id)
        return _build

    async def test_winner_fills_next_slot(self, engine, db, semi_played):
        ids = await semi_played()
        final = await load_match(db, ids["final_id"])
        assert final.participant1_id == ids["a"]
        assert final.participant1_source_match_id == ids["semi_id"]
        assert final.participant2_id is None
        assert final.version == 2

        loser = await db.get(Participant, ids["d"], populate_existing=True)
        assert loser.eliminated_in_match_id == ids["semi_id"]

    async def test_second_advance_is_a_no_op(self, engine, db, semi_played):
        ids = await semi_played()
        semi = await load_match(db, ids["semi_id"])
        outbox = EventOutbox()

        assert await engine.advancement.advance(db, semi, outbox) is False
        await db.commit()
        assert outbox.events == []

        final = await load_match(db, ids["final_id"])
        assert final.participant1_id == ids["a"]
        assert final.version == 2

    async def test_same_source_refill_accepted(self, engine, db, clock, semi_played):
        ids = await semi_played()
        await engine.advancement.fill_slot(
            db, ids["final_id"], MatchSlot.PARTICIPANT1, ids["a"], ids["semi_id"], clock()
        )
        await db.commit()
        final = await load_match(db, ids["final_id"])
        assert final.participant1_id == ids["a"]

    async def test_conflicting_fill_raises(self, engine, db, clock, semi_played):
        ids = await semi_played()
        with pytest.raises(IntegrityError) as exc:
            await engine.advancement.fill_slot(
                db, ids["final_id"], MatchSlot.PARTICIPANT1, ids["d"], ids["semi_id"], clock()
            )
        assert exc.value.details["existing_participant_id"] == ids["a"]
        await db.rollback()

        final = await load_match(db, ids["final_id"])
        assert final.participant1_id == ids["a"]

    async def test_empty_participant_raises(self, engine, db, clock, semi_played):
        ids = await semi_played()
        with pytest.raises(IntegrityError):
            await engine.advancement.fill_slot(
                db, ids["final_id"], MatchSlot.PARTICIPANT2, None, ids["semi_id"], clock()
            )
        await db.rollback()

    async def test_unsettled_match_cannot_advance(self, engine, db, semi_played):
        ids = await semi_played()
        other_semi = await find_match(engine, db, ids["tournament_id"], ids["b"], ids["c"])
        with pytest.raises(IntegrityError):
            await engine.advancement.advance(db, other_semi, EventOutbox())

    async def test_settled_without_winner_raises(self, engine, db, clock, semi_played):
        ids = await semi_played()
        other_semi = await find_match(engine, db, ids["tournament_id"], ids["b"], ids["c"])
        other_id = other_semi.id
        await db.execute(
            update(Match).where(Match.id == other_id)
            .values(status=MatchStatus.EXPIRED, settled_at=clock())
        )
        await db.commit()

        match = await load_match(db, other_id)
        with pytest.raises(IntegrityError):
            await engine.advancement.advance(db, match, EventOutbox())
        await db.rollback()

        match = await load_match(db, other_id)
        assert match.advanced_at is None


# =============================================================================
# Single elimination progress
# =============================================================================

class TestSingleElimination:

    async def test_bye_player_waits_then_match_becomes_playable(self, engine, db, clock, build_tournament):
        tournament, participants, _ = await build_tournament(players=3)
        a, b, c = (p.id for p in participants)
        final = await match_by_key(engine, db, tournament.id, BracketType.WINNERS, 2)
        assert final.participant1_id == a
        assert final.report_deadline_at is None

        clock.advance(hours=3)
        await play(engine, db, (await find_match(engine, db, tournament.id, b, c)).id, c)

        final = await load_match(db, final.id)
        assert final.participant2_id == c
        assert final.report_deadline_at == clock() + engine.settings.no_report_window

    async def test_current_round_moves_forward(self, engine, db, notifier, build_tournament):
        tournament, participants, _ = await build_tournament(players=4)
        tournament_id = tournament.id
        a, b, c, d = (p.id for p in participants)

        await play(engine, db, (await find_match(engine, db, tournament_id, a, d)).id, a)
        assert (await engine.orchestrator.get_tournament(db, tournament_id)).current_round == 1

        await play(engine, db, (await find_match(engine, db, tournament_id, b, c)).id, b)
        assert (await engine.orchestrator.get_tournament(db, tournament_id)).current_round == 2
        assert notifier.of("tournament.round_advanced") == [
            {"tournament_id": tournament_id, "current_round": 2}
        ]

    async def test_eight_player_standings(self, engine, db, build_tournament):
        tournament, participants, _ = await build_tournament(players=8)
        tournament_id = tournament.id
        played = await play_out(engine, db, tournament_id)
        assert played == 7

        standings = await engine.orchestrator.get_standings(db, tournament_id)
        seeds = {p.id: p.seed for p in participants}
        assert [seeds[s["id"]] for s in standings] == [1, 2, 4, 3, 8, 7, 5, 6]
        assert [s["final_standing"] for s in standings] == list(range(1, 9))


# =============================================================================
# Double elimination
# =============================================================================

class TestDoubleElimination:

    async def _to_grand_final(self, engine, db, build_tournament, **options):
        """a, b, c, d seeded 1-4; a takes the winners bracket, b the losers bracket."""
        tournament, participants, _ = await build_tournament(
            players=4, format=TournamentFormat.DOUBLE_ELIMINATION, **options
        )
        tid = tournament.id
        a, b, c, d = (p.id for p in participants)

        await play(engine, db, (await find_match(engine, db, tid, a, d)).id, a)
        await play(engine, db, (await find_match(engine, db, tid, b, c)).id, b)
        await play(engine, db, (await find_match(engine, db, tid, a, b)).id, a)
        await play(engine, db, (await find_match(engine, db, tid, c, d)).id, c)
        await play(engine, db, (await find_match(engine, db, tid, b, c)).id, b)
        grand_final = await find_match(engine, db, tid, a, b)
        return tid, (a, b, c, d), grand_final

    async def test_losers_drop_into_losers_bracket(self, engine, db, build_tournament):
        tournament, participants, _ = await build_tournament(
            players=4, format=TournamentFormat.DOUBLE_ELIMINATION
        )
        tid = tournament.id
        a, b, c, d = (p.id for p in participants)
        await play(engine, db, (await find_match(engine, db, tid, a, d)).id, a)
        await play(engine, db, (await find_match(engine, db, tid, b, c)).id, b)

        losers_round_one = await match_by_key(engine, db, tid, BracketType.LOSERS, 1)
        assert (losers_round_one.participant1_id, losers_round_one.participant2_id) == (d, c)
        for participant in await engine.orchestrator.list_participants(db, tid):
            assert participant.eliminated_in_match_id is None

    async def test_grand_final_lineup(self, engine, db, build_tournament):
        tid, (a, b, c, d), grand_final = await self._to_grand_final(engine, db, build_tournament)
        assert grand_final.bracket_type == BracketType.FINALS
        assert (grand_final.participant1_id, grand_final.participant2_id) == (a, b)

        participants = {p.id: p for p in await engine.orchestrator.list_participants(db, tid)}
        assert participants[c].eliminated_in_match_id is not None
        assert participants[d].eliminated_in_match_id is not None

    async def test_losers_champion_wins_without_reset(self, engine, db, build_tournament):
        tid, (a, b, c, d), grand_final = await self._to_grand_final(engine, db, build_tournament)
        await play(engine, db, grand_final.id, b)

        tournament = await engine.orchestrator.get_tournament(db, tid)
        assert tournament.status == TournamentStatus.COMPLETED
        standings = await engine.orchestrator.get_standings(db, tid)
        assert [s["id"] for s in standings] == [b, a, c, d]

    async def test_bracket_reset(self, engine, db, notifier, build_tournament):
        tid, (a, b, c, d), grand_final = await self._to_grand_final(
            engine, db, build_tournament, bracket_reset=True
        )
        await play(engine, db, grand_final.id, b)

        tournament = await engine.orchestrator.get_tournament(db, tid)
        assert tournament.status == TournamentStatus.LIVE

        reset = await find_match(engine, db, tid, a, b)
        assert reset.bracket_type == BracketType.FINALS
        assert reset.bracket_position == 1
        assert reset.round_number == grand_final.round_number + 1
        assert (reset.participant1_id, reset.participant2_id) == (a, b)
        assert reset.participant1_source_match_id == grand_final.id
        assert notifier.of("bracket.reset")[0]["match_id"] == reset.id

        participants = {p.id: p for p in await engine.orchestrator.list_participants(db, tid)}
        assert participants[a].eliminated_in_match_id is None

        await play(engine, db, reset.id, a)
        standings = await engine.orchestrator.get_standings(db, tid)
        assert [s["id"] for s in standings] == [a, b, c, d]
        assert len(notifier.of("bracket.champion_decided")) == 1

    async def test_winners_champion_takes_grand_final(self, engine, db, build_tournament):
        tid, (a, b, c, d), grand_final = await self._to_grand_final(
            engine, db, build_tournament, bracket_reset=True
        )
        await play(engine, db, grand_final.id, a)
        tournament = await engine.orchestrator.get_tournament(db, tid)
        assert tournament.status == TournamentStatus.COMPLETED
        matches = await engine.orchestrator.list_matches(db, tid)
        assert len(matches) == 6

    @pytest.mark.parametrize("players", [5, 6, 8])
    async def test_full_run_matches_and_losses(self, engine, db, build_tournament, players):
        tournament, participants, _ = await build_tournament(
            players=players, format=TournamentFormat.DOUBLE_ELIMINATION
        )
        played = await play_out(engine, db, tournament.id)
        assert played == 2 * players - 2

        tournament = await engine.orchestrator.get_tournament(db, tournament.id)
        assert tournament.status == TournamentStatus.COMPLETED
        standings = await engine.orchestrator.get_standings(db, tournament.id)
        assert [s["final_standing"] for s in standings] == list(range(1, players + 1))
        assert standings[0]["seed"] == 1
        assert standings[1]["seed"] == 2
