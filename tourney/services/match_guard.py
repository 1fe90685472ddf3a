"""
Optimistic concurrency for match rows.

Every status change is a single UPDATE guarded on the status the caller
read and the version it loaded. Zero rows affected means somebody else
moved the match first; that caller gets StaleStateError and nothing of
its own is written.
"""
import logging
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.errors import NotFoundError, StaleStateError
from tourney.orm.base import utcnow
from tourney.orm.match import Match, MatchStatus

logger = logging.getLogger(__name__)


async def load_match(db: AsyncSession, match_id: int) -> Match:
    match = await db.get(Match, match_id, populate_existing=True)
    if not match:
        raise NotFoundError("Match", match_id)
    return match


async def guarded_update(
    db: AsyncSession,
    match: Match,
    expected: Iterable[MatchStatus],
    **values
) -> Match:
    """
    Apply values to match if it is still in one of the expected statuses
    at the loaded version. Bumps version and refreshes the instance.
    """
    expected = tuple(expected)
    loaded_version = match.version
    result = await db.execute(
        update(Match)
        .where(
            Match.id == match.id,
            Match.status.in_(expected),
            Match.version == loaded_version,
        )
        .values(version=Match.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            f"Match {match.id} lost a race (expected {[s.value for s in expected]} "
            f"at version {loaded_version})"
        )
        raise StaleStateError(
            f"Match {match.id} was changed concurrently",
            details={"match_id": match.id, "expected_version": loaded_version}
        )
    await db.refresh(match)
    return match
