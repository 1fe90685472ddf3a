"""
tourney/tasks/timeout_scheduler.py
Periodic sweep driving time-based match and tournament transitions.

One sweep:
1. match.warning for reports past the warning point
2. auto-confirm for reports past auto_confirm_at
3. expiry for playable matches past report_deadline_at (a live match
   gets its deadline from live_at, and a sole checked-in side wins)
4. cancel and refund open tournaments past start_time

Candidates are collected first, then each one is handled in its own
session and transaction, so no lock is held across rows. A row that a
player or admin moved in the meantime raises StaleStateError and is
counted as stale, never retried within the sweep. Disputed matches are
never candidates.
"""

import logging
import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from tourney.engine import TournamentEngine
from tourney.errors import EngineError, StaleStateError
from tourney.orm.match import Match, MatchStatus, REPORTABLE_STATUSES
from tourney.orm.tournament import Tournament, TournamentStatus

logger = logging.getLogger(__name__)

START_TIME_PASSED = "start_time_passed"


class TimeoutScheduler:

    def __init__(self, engine: TournamentEngine, session_factory: async_sessionmaker,
                 interval_seconds: Optional[int] = None):
        self.engine = engine
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or engine.settings.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def _candidates(self, query) -> List[int]:
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run a single sweep and return per-action counts."""
        now = now or self.engine.lifecycle.clock()
        lifecycle = self.engine.lifecycle
        counts = {
            "warnings": 0, "auto_confirmed": 0, "expired": 0, "cancelled": 0, "stale": 0, "errors": 0,
        }

        warning_due = now + self.engine.settings.warning_offset
        warning_ids = await self._candidates(
            select(Match.id).where(
                Match.status == MatchStatus.AWAITING_CONFIRMATION,
                Match.warning_sent_at.is_(None),
                Match.auto_confirm_at <= warning_due,
                Match.auto_confirm_at > now,
            ).order_by(Match.id)
        )
        for match_id in warning_ids:
            await self._handle(lifecycle.send_warning, match_id, now, "warnings", counts)

        confirm_ids = await self._candidates(
            select(Match.id).where(
                Match.status == MatchStatus.AWAITING_CONFIRMATION,
                Match.auto_confirm_at <= now,
            ).order_by(Match.id)
        )
        for match_id in confirm_ids:
            await self._handle(lifecycle.auto_confirm, match_id, now, "auto_confirmed", counts)

        expiry_ids = await self._candidates(
            select(Match.id).where(
                Match.status.in_(REPORTABLE_STATUSES),
                Match.report_deadline_at <= now,
                Match.participant1_id.isnot(None),
                Match.participant2_id.isnot(None),
            ).order_by(Match.id)
        )
        for match_id in expiry_ids:
            await self._handle(lifecycle.expire, match_id, now, "expired", counts)

        overdue_ids = await self._candidates(
            select(Tournament.id).where(
                Tournament.status == TournamentStatus.OPEN,
                Tournament.start_time <= now,
            ).order_by(Tournament.id)
        )
        for tournament_id in overdue_ids:
            await self._handle(self._cancel_overdue, tournament_id, now, "cancelled", counts,
                               kind="tournament")

        if any(counts.values()):
            logger.info(f"Sweep at {now.isoformat()}: {counts}")
        return counts

    async def _cancel_overdue(self, db, tournament_id: int, now: datetime):
        return await self.engine.orchestrator.cancel(db, tournament_id, reason=START_TIME_PASSED)

    async def _handle(self, action, target_id: int, now: datetime, counter: str,
                      counts: Dict[str, int], kind: str = "match") -> None:
        async with self.session_factory() as db:
            try:
                if await action(db, target_id, now) is not False:
                    counts[counter] += 1
            except StaleStateError:
                logger.info(f"Sweep: {kind} {target_id} moved concurrently, skipped")
                counts["stale"] += 1
            except EngineError as e:
                logger.error(f"Sweep: {kind} {target_id} failed: {e.code}: {e.message}")
                counts["errors"] += 1

    async def loop(self):
        """
        Background sweep loop.
        Runs every interval_seconds.
        """
        logger.info(f"Starting timeout sweep loop with interval {self.interval_seconds}s")

        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Timeout sweep loop error: {str(e)}")

            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        """Start the sweep as a background coroutine."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Timeout sweep loop stopped")
