"""
Advancement Engine

Moves the result of a settled match (or a decided series) into the rest
of the bracket.

Exactly-once contract:
1. The match is claimed by setting advanced_at where it is still NULL.
   A second caller finds nothing to claim and returns without writing.
2. Every slot write is guarded on the slot being empty and records the
   source match. A slot already holding the same participant from the
   same source is accepted as a replay; anything else is bracket
   corruption and raises IntegrityError.

Everything runs inside the caller's transaction; nothing here commits.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config.settings import EngineSettings
from tourney.errors import IntegrityError, NotFoundError
from tourney.orm.match import Match, MatchSlot, MatchStatus, BracketType
from tourney.orm.participant import Participant
from tourney.orm.tournament import Tournament, TournamentFormat
from tourney.services.collaborators import Clock, EventOutbox, system_clock
from tourney.services.series_tracker import SeriesTracker

logger = logging.getLogger(__name__)

GRAND_FINAL_POSITION = 0
RESET_POSITION = 1


class AdvancementEngine:

    def __init__(self, series_tracker: SeriesTracker, orchestrator, settings: EngineSettings,
                 clock: Clock = system_clock):
        self.series_tracker = series_tracker
        self.orchestrator = orchestrator
        self.settings = settings
        self.clock = clock

    # =========================================================================
    # Entry point
    # =========================================================================

    async def advance(self, db: AsyncSession, match: Match, outbox: EventOutbox) -> bool:
        """
        Propagate a settled match. Returns False when it had already been
        advanced (duplicate event, retried sweep).
        """
        if match.settled_at is None:
            raise IntegrityError(
                f"Match {match.id} is not settled",
                details={"match_id": match.id, "status": match.status.value}
            )

        now = self.clock()
        result = await db.execute(
            update(Match)
            .where(Match.id == match.id, Match.advanced_at.is_(None), Match.settled_at.isnot(None))
            .values(advanced_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Match {match.id} already advanced, skipping")
            return False
        await db.refresh(match)

        tournament = await db.get(Tournament, match.tournament_id, populate_existing=True)
        if not tournament:
            raise NotFoundError("Tournament", match.tournament_id)

        if tournament.format == TournamentFormat.ROUND_ROBIN:
            await self._record_round_robin(db, match)
        else:
            outcome = await self._resolve_outcome(db, match, now, outbox)
            if outcome is not None:
                await self._propagate(db, tournament, match, outcome, now, outbox)

        logger.info(f"Advanced match {match.id} ({match.status.value}, winner {match.winner_id})")
        await self.orchestrator.on_match_settled(db, match.tournament_id, outbox)
        return True

    async def _resolve_outcome(self, db: AsyncSession, match: Match, now: datetime,
                               outbox: EventOutbox) -> Optional[Tuple[int, Optional[int]]]:
        if match.series_id is not None:
            return await self.series_tracker.record_game(db, match, now, outbox)

        if match.winner_id is None:
            logger.error(f"Elimination match {match.id} settled without a winner")
            raise IntegrityError(
                f"Elimination match {match.id} has no winner",
                details={"match_id": match.id}
            )
        return match.winner_id, match.opponent_of(match.winner_id)

    # =========================================================================
    # Elimination
    # =========================================================================

    async def _propagate(self, db: AsyncSession, tournament: Tournament, match: Match,
                         outcome: Tuple[int, Optional[int]], now: datetime,
                         outbox: EventOutbox) -> None:
        winner_id, loser_id = outcome

        if match.next_match_id is not None:
            await self.fill_slot(db, match.next_match_id, match.next_match_slot, winner_id, match.id, now)

        if match.loser_next_match_id is not None:
            await self.fill_slot(
                db, match.loser_next_match_id, match.loser_next_match_slot, loser_id, match.id, now
            )
        elif loser_id is not None and not self._needs_reset(tournament, match, winner_id):
            await self._mark_eliminated(db, loser_id, match.id)

        if match.is_terminal:
            if self._needs_reset(tournament, match, winner_id):
                await self._create_reset(db, tournament, match, winner_id, loser_id, now, outbox)
                return
            await self._record_final(db, winner_id, loser_id)
            outbox.add("bracket.champion_decided", {
                "tournament_id": tournament.id,
                "match_id": match.id,
                "winner_id": winner_id,
                "runner_up_id": loser_id,
            })

    async def fill_slot(self, db: AsyncSession, target_id: int, slot: MatchSlot,
                        participant_id: Optional[int], source_id: int, now: datetime) -> None:
        if participant_id is None:
            raise IntegrityError(
                f"Match {source_id} routes an empty participant into match {target_id}",
                details={"source_match_id": source_id, "target_match_id": target_id}
            )

        participant_column = getattr(Match, slot.participant_column)
        source_column = getattr(Match, slot.source_column)
        result = await db.execute(
            update(Match)
            .where(Match.id == target_id, participant_column.is_(None))
            .values({
                participant_column: participant_id,
                source_column: source_id,
                Match.version: Match.version + 1,
                Match.updated_at: now,
            })
            .execution_options(synchronize_session=False)
        )

        target = await db.get(Match, target_id)
        if not target:
            raise IntegrityError(
                f"Match {source_id} points at missing match {target_id}",
                details={"source_match_id": source_id, "target_match_id": target_id}
            )
        await db.refresh(target)

        if result.rowcount != 1:
            existing = getattr(target, slot.participant_column)
            existing_source = getattr(target, slot.source_column)
            if existing == participant_id and existing_source == source_id:
                logger.info(f"Match {target_id} {slot.value} already filled from match {source_id}")
                return
            logger.error(
                f"Bracket corruption: match {target_id} {slot.value} holds participant "
                f"{existing} from match {existing_source}, refusing {participant_id} from {source_id}"
            )
            raise IntegrityError(
                f"Slot {slot.value} of match {target_id} is already filled by another source",
                details={
                    "target_match_id": target_id,
                    "slot": slot.value,
                    "existing_participant_id": existing,
                    "existing_source_match_id": existing_source,
                    "source_match_id": source_id,
                    "participant_id": participant_id,
                }
            )

        logger.info(f"Participant {participant_id} advanced from match {source_id} to {target_id} ({slot.value})")

        if target.has_both_participants:
            await self._make_playable(db, target, now)

    async def _make_playable(self, db: AsyncSession, target: Match, now: datetime) -> None:
        await db.execute(
            update(Match)
            .where(Match.id == target.id, Match.report_deadline_at.is_(None))
            .values(report_deadline_at=now + self.settings.no_report_window)
            .execution_options(synchronize_session=False)
        )
        if target.series_id is not None:
            await self.series_tracker.assign_participants(
                db, target.series_id, target.participant1_id, target.participant2_id
            )
        await db.refresh(target)

    async def _mark_eliminated(self, db: AsyncSession, participant_id: int, match_id: int) -> None:
        await db.execute(
            update(Participant)
            .where(Participant.id == participant_id, Participant.eliminated_in_match_id.is_(None))
            .values(eliminated_in_match_id=match_id)
            .execution_options(synchronize_session=False)
        )

    async def _record_final(self, db: AsyncSession, winner_id: int, loser_id: Optional[int]) -> None:
        await db.execute(
            update(Participant)
            .where(Participant.id == winner_id)
            .values(final_standing=1)
            .execution_options(synchronize_session=False)
        )
        if loser_id is not None:
            await db.execute(
                update(Participant)
                .where(Participant.id == loser_id)
                .values(final_standing=2)
                .execution_options(synchronize_session=False)
            )

    # =========================================================================
    # Grand final reset
    # =========================================================================

    def _needs_reset(self, tournament: Tournament, match: Match, winner_id: int) -> bool:
        """The losers-bracket champion (slot 2) took the first grand final."""
        return (
            tournament.format == TournamentFormat.DOUBLE_ELIMINATION
            and tournament.bracket_reset
            and match.bracket_type == BracketType.FINALS
            and match.bracket_position == GRAND_FINAL_POSITION
            and match.is_terminal
            and winner_id == match.participant2_id
        )

    async def _create_reset(self, db: AsyncSession, tournament: Tournament, match: Match,
                            winner_id: int, loser_id: int, now: datetime,
                            outbox: EventOutbox) -> Match:
        series_id = None
        if tournament.grand_final_best_of > 1:
            series = await self.series_tracker.create_series(
                db, tournament.id, tournament.grand_final_best_of, loser_id, winner_id
            )
            series_id = series.id

        reset = Match(
            tournament_id=tournament.id,
            round_number=match.round_number + 1,
            bracket_type=BracketType.FINALS,
            bracket_position=RESET_POSITION,
            participant1_id=loser_id,
            participant2_id=winner_id,
            participant1_source_match_id=match.id,
            participant2_source_match_id=match.id,
            status=MatchStatus.SCHEDULED,
            report_deadline_at=now + self.settings.no_report_window,
            series_id=series_id,
            series_game_number=1 if series_id else None,
            version=1,
        )
        db.add(reset)
        await db.flush()
        logger.info(f"Tournament {tournament.id}: bracket reset, grand final 2 is match {reset.id}")
        outbox.add("bracket.reset", {
            "tournament_id": tournament.id,
            "match_id": reset.id,
            "participant1_id": loser_id,
            "participant2_id": winner_id,
        })
        return reset

    # =========================================================================
    # Round robin
    # =========================================================================

    async def _record_round_robin(self, db: AsyncSession, match: Match) -> None:
        p1_score = match.participant1_score or 0
        p2_score = match.participant2_score or 0

        for participant_id, scored, conceded in (
            (match.participant1_id, p1_score, p2_score),
            (match.participant2_id, p2_score, p1_score),
        ):
            won = match.winner_id is not None and participant_id == match.winner_id
            await db.execute(
                update(Participant)
                .where(Participant.id == participant_id)
                .values(
                    wins=Participant.wins + (1 if won else 0),
                    losses=Participant.losses + (0 if won else 1),
                    score_for=Participant.score_for + scored,
                    score_against=Participant.score_against + conceded,
                )
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Round robin match {match.id} tallied (winner {match.winner_id})")
