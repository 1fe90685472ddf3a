"""
Tournament API Routes.

Thin wrappers over TournamentOrchestrator; engine errors are rendered by
the application-level EngineError handler.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.auth import CurrentUser, get_current_user, get_engine, require_admin
from tourney.database import get_db
from tourney.engine import TournamentEngine
from tourney.orm.tournament import ExpiryPolicy, TournamentFormat


router = APIRouter(prefix="/api/tournaments", tags=["tournaments"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class PrizeEntry(BaseModel):
    position: int = Field(..., ge=1)
    percentage: Decimal = Field(..., ge=0, le=100)


class CreateTournamentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    format: TournamentFormat
    total_slots: int = Field(..., ge=2)
    entry_fee: Decimal = Field(Decimal("0"), ge=0)
    prizes: List[PrizeEntry] = []
    best_of: int = Field(1, ge=1)
    grand_final_best_of: int = Field(1, ge=1)
    bracket_reset: Optional[bool] = None
    expiry_policy: Optional[ExpiryPolicy] = None
    start_time: Optional[datetime] = None


class JoinRequest(BaseModel):
    gamer_tag: str = Field(..., min_length=1, max_length=64)


class StartRequest(BaseModel):
    seed_order: Optional[List[int]] = None


# =============================================================================
# Routes
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tournament(
    request: CreateTournamentRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """
    Create a tournament open for registration.

    **Roles:** Admin
    """
    tournament = await engine.orchestrator.create_tournament(
        db,
        name=request.name,
        format=request.format,
        total_slots=request.total_slots,
        entry_fee=request.entry_fee,
        prizes=[p.model_dump() for p in request.prizes],
        best_of=request.best_of,
        grand_final_best_of=request.grand_final_best_of,
        bracket_reset=request.bracket_reset,
        expiry_policy=request.expiry_policy,
        start_time=request.start_time,
        created_by=current_user.id,
    )
    return tournament.to_dict()


@router.get("/{tournament_id}")
async def get_tournament(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
):
    tournament = await engine.orchestrator.get_tournament(db, tournament_id)
    return tournament.to_dict()


@router.get("/{tournament_id}/bracket")
async def get_bracket(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
):
    matches = await engine.orchestrator.list_matches(db, tournament_id)
    return {"tournament_id": tournament_id, "matches": [m.to_dict() for m in matches]}


@router.get("/{tournament_id}/standings")
async def get_standings(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
):
    standings = await engine.orchestrator.get_standings(db, tournament_id)
    return {"tournament_id": tournament_id, "standings": standings}


@router.post("/{tournament_id}/join", status_code=status.HTTP_201_CREATED)
async def join_tournament(
    tournament_id: int,
    request: JoinRequest,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    participant = await engine.orchestrator.join(db, tournament_id, current_user.id, request.gamer_tag)
    return participant.to_dict()


@router.post("/{tournament_id}/check-in")
async def check_in(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(get_current_user),
):
    participant = await engine.orchestrator.check_in(db, tournament_id, current_user.id)
    return participant.to_dict()


@router.post("/{tournament_id}/lock")
async def lock_tournament(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """**Roles:** Admin"""
    tournament = await engine.orchestrator.lock(db, tournament_id)
    return tournament.to_dict()


@router.post("/{tournament_id}/start")
async def start_tournament(
    tournament_id: int,
    request: Optional[StartRequest] = None,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """
    Build the bracket and go live.

    **Roles:** Admin
    """
    seed_order = request.seed_order if request else None
    matches = await engine.orchestrator.start(db, tournament_id, seed_order=seed_order)
    return {"tournament_id": tournament_id, "matches": [m.to_dict() for m in matches]}


@router.post("/{tournament_id}/cancel")
async def cancel_tournament(
    tournament_id: int,
    db: AsyncSession = Depends(get_db),
    engine: TournamentEngine = Depends(get_engine),
    current_user: CurrentUser = Depends(require_admin),
):
    """**Roles:** Admin"""
    tournament = await engine.orchestrator.cancel(db, tournament_id)
    return tournament.to_dict()
