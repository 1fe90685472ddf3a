"""
Timeout Scheduler Test Suite.

Sweeps are driven with an explicit `now`; every match is handled in its
own session, exactly like the background loop.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from tourney.orm.match import MatchStatus
from tourney.orm.tournament import TournamentStatus
from tourney.services.match_guard import load_match
from tourney.tasks.timeout_scheduler import TimeoutScheduler

NOTHING = {"warnings": 0, "auto_confirmed": 0, "expired": 0, "cancelled": 0, "stale": 0, "errors": 0}


@pytest.fixture
def scheduler(engine, session_factory):
    return TimeoutScheduler(engine, session_factory, interval_seconds=3600)


@pytest.fixture
def reported(engine, db, build_tournament):
    """Two-player match reported by user 1; returns ids and the report time."""
    async def _reported(**options):
        tournament, (a, b), (match,) = await build_tournament(players=2, **options)
        await engine.lifecycle.report(db, match.id, a.user_id, 2, 0)
        return dict(tournament_id=tournament.id, match_id=match.id, a=a.id, b=b.id,
                    a_user=a.user_id, b_user=b.user_id)
    return _reported


class TestSweep:

    async def test_empty_sweep(self, scheduler, db, clock):
        assert await scheduler.run_once(clock()) == NOTHING

    async def test_interval_defaults_to_settings(self, engine, session_factory):
        assert TimeoutScheduler(engine, session_factory).interval_seconds == engine.settings.sweep_interval_seconds

    async def test_warning_then_auto_confirm(self, scheduler, engine, db, clock, notifier, reported):
        ids = await reported()
        start = clock()

        assert await scheduler.run_once(start + timedelta(hours=12)) == NOTHING

        counts = await scheduler.run_once(start + timedelta(hours=18))
        assert counts["warnings"] == 1
        assert await scheduler.run_once(start + timedelta(hours=20)) == NOTHING

        counts = await scheduler.run_once(start + timedelta(hours=24))
        assert counts["auto_confirmed"] == 1

        match = await load_match(db, ids["match_id"])
        assert match.status == MatchStatus.COMPLETED
        assert match.auto_verified is True
        tournament = await engine.orchestrator.get_tournament(db, ids["tournament_id"])
        assert tournament.status == TournamentStatus.COMPLETED
        assert notifier.names().count("match.warning") == 1

    async def test_sweep_is_idempotent(self, scheduler, db, clock, reported):
        await reported()
        later = clock() + timedelta(days=2)
        first = await scheduler.run_once(later)
        second = await scheduler.run_once(later)
        assert first["auto_confirmed"] == 1
        assert second == NOTHING

    async def test_disputed_match_is_frozen(self, scheduler, engine, db, clock, reported):
        ids = await reported()
        await engine.lifecycle.contest(db, ids["match_id"], ids["b_user"], "not my score")
        before = await load_match(db, ids["match_id"])
        version, updated_at = before.version, before.updated_at

        counts = await scheduler.run_once(clock() + timedelta(days=30))
        assert counts == NOTHING

        match = await load_match(db, ids["match_id"])
        assert match.status == MatchStatus.DISPUTED
        assert match.version == version
        assert match.updated_at == updated_at
        assert match.settled_at is None
        assert match.warning_sent_at is None

    async def test_expiry(self, scheduler, db, clock, build_tournament):
        tournament, _, (match,) = await build_tournament(players=2)
        match_id = match.id
        deadline = clock() + timedelta(hours=48)

        assert await scheduler.run_once(deadline - timedelta(minutes=1)) == NOTHING
        counts = await scheduler.run_once(deadline)
        assert counts["expired"] == 1
        assert await scheduler.run_once(deadline + timedelta(hours=1)) == NOTHING

        match = await load_match(db, match_id)
        assert match.status == MatchStatus.NO_CONTEST

    async def test_no_show_forfeit_at_deadline(self, scheduler, engine, db, clock, build_tournament):
        tournament, (a, b), (match,) = await build_tournament(players=2)
        match_id = match.id
        await engine.lifecycle.mark_ready(db, match_id, b.user_id)

        counts = await scheduler.run_once(clock() + timedelta(hours=48))
        assert counts["expired"] == 1

        match = await load_match(db, match_id)
        assert match.status == MatchStatus.FORFEITED
        assert match.winner_id == b.id
        assert match.resolution_reason == "no_show"
        tournament = await engine.orchestrator.get_tournament(db, tournament.id)
        assert tournament.status == TournamentStatus.COMPLETED

    async def test_live_match_without_score(self, scheduler, engine, db, clock, build_tournament):
        _, (a, b), (match,) = await build_tournament(players=2)
        match_id = match.id
        await engine.lifecycle.mark_live(db, match_id)
        await engine.lifecycle.mark_ready(db, match_id, a.user_id)
        live_at = clock()

        assert await scheduler.run_once(live_at + timedelta(minutes=59)) == NOTHING
        counts = await scheduler.run_once(live_at + timedelta(minutes=60))
        assert counts["expired"] == 1

        match = await load_match(db, match_id)
        assert match.status == MatchStatus.FORFEITED
        assert match.winner_id == a.id

    async def test_player_wins_race_against_sweep(self, scheduler, engine, db, clock,
                                                  session_factory, monkeypatch, reported):
        ids = await reported()
        original = engine.lifecycle.auto_confirm

        async def player_confirms_first(session, match_id, now):
            async with session_factory() as player_db:
                await engine.lifecycle.confirm(player_db, match_id, ids["b_user"])
            return await original(session, match_id, now)

        monkeypatch.setattr(engine.lifecycle, "auto_confirm", player_confirms_first)
        counts = await scheduler.run_once(clock() + timedelta(days=2))
        assert counts["stale"] == 1
        assert counts["auto_confirmed"] == 0

        match = await load_match(db, ids["match_id"])
        assert match.status == MatchStatus.COMPLETED
        assert match.auto_verified is False
        assert match.confirmed_by_user_id == ids["b_user"]


class TestLoop:

    async def test_start_and_stop(self, scheduler):
        task = scheduler.start()
        assert scheduler.start() is task
        await asyncio.sleep(0)
        await scheduler.stop()
        assert task.cancelled() or task.done()
        assert scheduler._task is None

    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()


class TestOverdueTournaments:

    async def test_open_past_start_time_is_cancelled(self, scheduler, engine, db, clock, wallet, notifier):
        tournament = await engine.orchestrator.create_tournament(
            db, name="Late Cup", format="single_elimination", total_slots=4, entry_fee="10",
            start_time=clock() + timedelta(hours=1),
        )
        tournament_id = tournament.id
        await engine.orchestrator.join(db, tournament_id, 1, "a")
        await engine.orchestrator.join(db, tournament_id, 2, "b")

        assert await scheduler.run_once(clock() + timedelta(minutes=59)) == NOTHING
        counts = await scheduler.run_once(clock() + timedelta(hours=1))
        assert counts["cancelled"] == 1
        assert await scheduler.run_once(clock() + timedelta(hours=2)) == NOTHING

        tournament = await engine.orchestrator.get_tournament(db, tournament_id)
        assert tournament.status == TournamentStatus.CANCELLED
        assert sorted(wallet.credits) == [
            (1, Decimal("10.00"), f"tournament:{tournament_id}:refund:1"),
            (2, Decimal("10.00"), f"tournament:{tournament_id}:refund:2"),
        ]
        cancelled = notifier.of("tournament.cancelled")
        assert len(cancelled) == 1
        assert cancelled[0]["reason"] == "start_time_passed"

    async def test_locked_or_unscheduled_tournaments_are_left_alone(self, scheduler, engine, db,
                                                                     clock, wallet):
        locked = await engine.orchestrator.create_tournament(
            db, name="Locked Cup", format="single_elimination", total_slots=2, entry_fee="10",
            start_time=clock(),
        )
        locked_id = locked.id
        await engine.orchestrator.join(db, locked_id, 1, "a")
        await engine.orchestrator.join(db, locked_id, 2, "b")
        await engine.orchestrator.lock(db, locked_id)
        await engine.orchestrator.create_tournament(
            db, name="Open Cup", format="round_robin", total_slots=4,
        )

        assert await scheduler.run_once(clock() + timedelta(days=7)) == NOTHING
        assert wallet.credits == []
        locked = await engine.orchestrator.get_tournament(db, locked_id)
        assert locked.status == TournamentStatus.LOCKED
