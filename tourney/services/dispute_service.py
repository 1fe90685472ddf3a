"""
Dispute Service

Admin handling of contested reports.

Status flows: OPEN → UNDER_REVIEW → RESOLVED (OPEN → RESOLVED is allowed
for quick rulings). Resolving sets the match back to COMPLETED with the
adjudicated winner and advances it, all in one transaction.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.errors import ErrorCode, NotFoundError, StaleStateError, ValidationError
from tourney.orm.dispute import Dispute, DisputeStatus
from tourney.services.collaborators import EventOutbox, Notifier
from tourney.services.match_guard import load_match
from tourney.services.match_lifecycle import MatchLifecycle

logger = logging.getLogger(__name__)


class DisputeService:

    VALID_TRANSITIONS = {
        DisputeStatus.OPEN: [DisputeStatus.UNDER_REVIEW, DisputeStatus.RESOLVED],
        DisputeStatus.UNDER_REVIEW: [DisputeStatus.RESOLVED],
        DisputeStatus.RESOLVED: [],
    }

    def __init__(self, lifecycle: MatchLifecycle, notifier: Notifier):
        self.lifecycle = lifecycle
        self.notifier = notifier

    @staticmethod
    def _is_valid_transition(current: DisputeStatus, target: DisputeStatus) -> bool:
        return target in DisputeService.VALID_TRANSITIONS.get(current, [])

    async def get_dispute(self, db: AsyncSession, dispute_id: int) -> Dispute:
        dispute = await db.get(Dispute, dispute_id, populate_existing=True)
        if not dispute:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    async def list_for_match(self, db: AsyncSession, match_id: int) -> List[Dispute]:
        result = await db.execute(
            select(Dispute).where(Dispute.match_id == match_id).order_by(Dispute.id)
        )
        return list(result.scalars().all())

    async def _transition(self, db: AsyncSession, dispute: Dispute, target: DisputeStatus,
                          **values) -> Dispute:
        current = dispute.status
        if not self._is_valid_transition(current, target):
            raise StaleStateError(
                f"Dispute {dispute.id} is {current.value}, cannot move to {target.value}",
                code=ErrorCode.STATE_TRANSITION_INVALID,
                details={"current": current.value, "target": target.value}
            )
        result = await db.execute(
            update(Dispute)
            .where(Dispute.id == dispute.id, Dispute.status == current)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(f"Dispute {dispute.id} was changed concurrently")
        await db.refresh(dispute)
        return dispute

    async def start_review(self, db: AsyncSession, dispute_id: int, admin_user_id: int) -> Dispute:
        try:
            dispute = await self.get_dispute(db, dispute_id)
            await self._transition(db, dispute, DisputeStatus.UNDER_REVIEW,
                                   reviewed_by_user_id=admin_user_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Dispute {dispute_id} under review by admin {admin_user_id}")
        return dispute

    async def resolve(
        self,
        db: AsyncSession,
        dispute_id: int,
        admin_user_id: int,
        winner_participant_id: int,
        resolution_details: str,
        participant1_score: Optional[int] = None,
        participant2_score: Optional[int] = None,
    ) -> Dispute:
        outbox = EventOutbox()
        try:
            if not resolution_details or not resolution_details.strip():
                raise ValidationError("Resolution details are required")
            dispute = await self.get_dispute(db, dispute_id)
            match = await load_match(db, dispute.match_id)

            await self._transition(
                db, dispute, DisputeStatus.RESOLVED,
                resolution_details=resolution_details.strip(),
                resolved_by_user_id=admin_user_id,
                resolved_winner_id=winner_participant_id,
                closed_at=self.lifecycle.clock(),
            )
            await self.lifecycle.apply_resolution(
                db, match, winner_participant_id, admin_user_id, outbox,
                participant1_score=participant1_score,
                participant2_score=participant2_score,
            )
            outbox.add("match.dispute_resolved", {
                "dispute_id": dispute.id,
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "winner_id": winner_participant_id,
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Dispute {dispute_id} resolved by admin {admin_user_id}, "
            f"match {match.id} winner {winner_participant_id}"
        )
        await outbox.dispatch(self.notifier)
        return dispute
