"""
Series Tracker

Best-of-N sets between the same two participants. Each settled game adds
one win to its winner; the series completes the moment a side reaches the
majority and only then is its result handed on to advancement. The next
game is created lazily, so a decided series never has a spare game.

Exactly-once win counting relies on the caller: AdvancementEngine only
calls record_game after claiming the game's advanced_at slot.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config.settings import EngineSettings
from tourney.errors import IntegrityError, NotFoundError, StaleStateError
from tourney.orm.match import Match, MatchStatus
from tourney.orm.series import Series, SeriesStatus
from tourney.services.collaborators import EventOutbox

logger = logging.getLogger(__name__)


class SeriesTracker:

    def __init__(self, settings: EngineSettings):
        self.settings = settings

    async def create_series(self, db: AsyncSession, tournament_id: int, best_of: int,
                            participant1_id: Optional[int] = None,
                            participant2_id: Optional[int] = None) -> Series:
        series = Series(
            tournament_id=tournament_id,
            best_of=best_of,
            participant1_id=participant1_id,
            participant2_id=participant2_id,
            participant1_wins=0,
            participant2_wins=0,
            status=SeriesStatus.ACTIVE,
        )
        db.add(series)
        await db.flush()
        return series

    async def assign_participants(self, db: AsyncSession, series_id: int,
                                  participant1_id: int, participant2_id: int) -> None:
        """Copy the game-1 line-up onto the series once both slots are known."""
        await db.execute(
            update(Series)
            .where(Series.id == series_id, Series.status == SeriesStatus.ACTIVE)
            .values(participant1_id=participant1_id, participant2_id=participant2_id)
            .execution_options(synchronize_session=False)
        )

    async def record_game(
        self,
        db: AsyncSession,
        game: Match,
        now: datetime,
        outbox: EventOutbox
    ) -> Optional[Tuple[int, int]]:
        """
        Count a settled game.

        Returns (winner_id, loser_id) when this game decided the series,
        None when another game was scheduled instead.
        """
        series = await db.get(Series, game.series_id)
        if not series:
            raise NotFoundError("Series", game.series_id)
        await db.refresh(series)

        if game.winner_id is None:
            logger.error(f"Series {series.id}: game {game.id} settled without a winner")
            raise IntegrityError(
                f"Series game {game.id} has no winner",
                details={"series_id": series.id, "match_id": game.id}
            )

        if game.winner_id == series.participant1_id:
            wins_column = Series.participant1_wins
        elif game.winner_id == series.participant2_id:
            wins_column = Series.participant2_wins
        else:
            logger.error(f"Series {series.id}: winner {game.winner_id} is not in the series")
            raise IntegrityError(
                f"Winner of game {game.id} does not belong to series {series.id}",
                details={"series_id": series.id, "winner_id": game.winner_id}
            )

        result = await db.execute(
            update(Series)
            .where(
                Series.id == series.id,
                Series.status == SeriesStatus.ACTIVE,
                wins_column < series.wins_needed,
            )
            .values({wins_column: wins_column + 1, Series.updated_at: now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(
                f"Series {series.id} is already decided",
                details={"series_id": series.id, "match_id": game.id}
            )
        await db.refresh(series)

        logger.info(
            f"Series {series.id} game {game.series_game_number}: "
            f"{series.participant1_wins}-{series.participant2_wins} (best of {series.best_of})"
        )

        leader_wins = max(series.participant1_wins, series.participant2_wins)
        if leader_wins >= series.wins_needed:
            await db.execute(
                update(Series)
                .where(Series.id == series.id, Series.status == SeriesStatus.ACTIVE)
                .values(status=SeriesStatus.COMPLETED, winner_id=game.winner_id, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.refresh(series)
            loser_id = game.opponent_of(game.winner_id)
            logger.info(f"Series {series.id} completed, winner {game.winner_id}")
            outbox.add("series.completed", {
                "series_id": series.id,
                "tournament_id": series.tournament_id,
                "winner_id": game.winner_id,
                "loser_id": loser_id,
                "score": [series.participant1_wins, series.participant2_wins],
            })
            return game.winner_id, loser_id

        next_game = await self._schedule_next_game(db, series, game, now)
        outbox.add("series.game_scheduled", {
            "series_id": series.id,
            "tournament_id": series.tournament_id,
            "match_id": next_game.id,
            "game_number": next_game.series_game_number,
        })
        return None

    async def _schedule_next_game(self, db: AsyncSession, series: Series, game: Match,
                                  now: datetime) -> Match:
        number = (game.series_game_number or 1) + 1
        existing = await db.execute(
            select(Match).where(Match.series_id == series.id, Match.series_game_number == number)
        )
        if existing.scalar_one_or_none() is not None:
            raise IntegrityError(
                f"Series {series.id} already has game {number}",
                details={"series_id": series.id}
            )

        next_game = Match(
            tournament_id=game.tournament_id,
            round_number=game.round_number,
            bracket_type=game.bracket_type,
            bracket_position=game.bracket_position,
            participant1_id=series.participant1_id,
            participant2_id=series.participant2_id,
            status=MatchStatus.SCHEDULED,
            next_match_id=game.next_match_id,
            next_match_slot=game.next_match_slot,
            loser_next_match_id=game.loser_next_match_id,
            loser_next_match_slot=game.loser_next_match_slot,
            series_id=series.id,
            series_game_number=number,
            report_deadline_at=now + self.settings.no_report_window,
            version=1,
        )
        db.add(next_game)
        await db.flush()
        logger.info(f"Series {series.id}: scheduled game {number} as match {next_game.id}")
        return next_game
