"""
Match API Routes.

Player actions (check-in, report, confirm, dispute) and admin actions
(live, forfeit, replay) on a single match.
"""
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.auth import CurrentUser, get_current_user, get_engine, require_admin
from tourney.database import get_db
from tourney.engine import TournamentEngine
from tourney.services.match_guard import load_match


router = APIRouter(prefix="/api/matches", tags=["matches"])


class ReportRequest(BaseModel):
    participant1_score: int = Field(..., ge=0)
    participant2_score: int = Field(..., ge=0)
    evidence_url: Optional[str] = Field(None, max_length=512)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    evidence_url: Optional[str] = Field(None, max_length=512)


class ForfeitRequest(BaseModel):
    winner_participant_id: int
    reason: str = "forfeit"


@router.get("/{match_id}")
async def get_match(
    match_id: int,
    db: AsyncSession = Depends(get_db),
):
    match = await load_match(db, match_id)
    return match.to_dict()


@router.post("/{match_id}/report")
async def report_result(
    match_id: int,
    request: ReportRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    match = await engine.lifecycle.report(
        db, match_id, current_user.id,
        request.participant1_score, request.participant2_score,
        evidence_url=request.evidence_url,
    )
    return match.to_dict()


@router.post("/{match_id}/ready")
async def check_in(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    match = await engine.lifecycle.mark_ready(db, match_id, current_user.id)
    return match.to_dict()


@router.post("/{match_id}/confirm")
async def confirm_result(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    match = await engine.lifecycle.confirm(db, match_id, current_user.id)
    return match.to_dict()


@router.post("/{match_id}/dispute", status_code=status.HTTP_201_CREATED)
async def dispute_result(
    match_id: int,
    request: DisputeRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    dispute = await engine.lifecycle.contest(
        db, match_id, current_user.id, request.reason, evidence_url=request.evidence_url
    )
    return dispute.to_dict()


@router.post("/{match_id}/live")
async def mark_live(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """**Roles:** Admin"""
    match = await engine.lifecycle.mark_live(db, match_id)
    return match.to_dict()


@router.post("/{match_id}/forfeit")
async def forfeit_match(
    match_id: int,
    request: ForfeitRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """**Roles:** Admin"""
    match = await engine.lifecycle.forfeit(
        db, match_id, request.winner_participant_id,
        admin_user_id=current_user.id, reason=request.reason,
    )
    return match.to_dict()


@router.post("/{match_id}/replay")
async def replay_match(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """**Roles:** Admin"""
    match = await engine.lifecycle.replay(db, match_id)
    return match.to_dict()
