"""
Dispute API Routes (admin only).
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.auth import CurrentUser, get_engine, require_admin
from tourney.database import get_db
from tourney.engine import TournamentEngine


router = APIRouter(prefix="/api/disputes", tags=["disputes"])


class ResolveRequest(BaseModel):
    winner_participant_id: int
    resolution_details: str = Field(..., min_length=1)
    participant1_score: Optional[int] = Field(None, ge=0)
    participant2_score: Optional[int] = Field(None, ge=0)


@router.get("/{dispute_id}")
async def get_dispute(
    dispute_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    dispute = await engine.disputes.get_dispute(db, dispute_id)
    return dispute.to_dict()


@router.post("/{dispute_id}/review")
async def start_review(
    dispute_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    dispute = await engine.disputes.start_review(db, dispute_id, current_user.id)
    return dispute.to_dict()


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: int,
    request: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    dispute = await engine.disputes.resolve(
        db, dispute_id, current_user.id,
        request.winner_participant_id, request.resolution_details,
        participant1_score=request.participant1_score,
        participant2_score=request.participant2_score,
    )
    return dispute.to_dict()
