"""
Tournament and prize table models.

Tournament.status is a forward-only state machine:
    open → locked → live → completed
with cancelled reachable from open/locked only. An open tournament
that reaches start_time without being locked is cancelled by the sweep.
"""
from enum import Enum
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, Boolean, Numeric, DateTime, ForeignKey,
    CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from tourney.orm.base import BaseModel, enum_column_type


class TournamentFormat(str, Enum):
    SINGLE_ELIMINATION = "single_elimination"
    DOUBLE_ELIMINATION = "double_elimination"
    ROUND_ROBIN = "round_robin"


class TournamentStatus(str, Enum):
    OPEN = "open"
    LOCKED = "locked"
    LIVE = "live"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ExpiryPolicy(str, Enum):
    """What the sweep does with a playable match nobody reported in time."""
    NO_CONTEST = "no_contest"
    RESCHEDULE = "reschedule"
    HIGHER_SEED_ADVANCES = "higher_seed_advances"
    DOUBLE_FORFEIT = "double_forfeit"


ELIMINATION_FORMATS = (
    TournamentFormat.SINGLE_ELIMINATION,
    TournamentFormat.DOUBLE_ELIMINATION,
)


class Tournament(BaseModel):
    """
    A competition with a fixed number of paid slots.

    current_round is owned by TournamentOrchestrator and only moves
    through its recompute step.
    """
    __tablename__ = "tournaments"

    name = Column(String(255), nullable=False)
    format = Column(enum_column_type(TournamentFormat), nullable=False)
    status = Column(
        enum_column_type(TournamentStatus),
        nullable=False,
        default=TournamentStatus.OPEN
    )
    total_slots = Column(Integer, nullable=False)
    current_slots = Column(Integer, nullable=False, default=0)
    current_round = Column(Integer, nullable=False, default=0)
    entry_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    best_of = Column(Integer, nullable=False, default=1)
    grand_final_best_of = Column(Integer, nullable=False, default=1)
    bracket_reset = Column(Boolean, nullable=False, default=False)
    expiry_policy = Column(
        enum_column_type(ExpiryPolicy),
        nullable=False,
        default=ExpiryPolicy.NO_CONTEST
    )

    # Still open at start_time means the sweep cancels and refunds
    start_time = Column(DateTime, nullable=True)
    created_by = Column(Integer, nullable=True)

    prizes = relationship(
        "TournamentPrize",
        back_populates="tournament",
        cascade="all, delete-orphan",
        order_by="TournamentPrize.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("total_slots >= 2", name="ck_tournament_min_slots"),
        CheckConstraint("current_slots >= 0", name="ck_tournament_slots_nonneg"),
        CheckConstraint("current_slots <= total_slots", name="ck_tournament_slots_cap"),
        CheckConstraint("entry_fee >= 0", name="ck_tournament_fee_nonneg"),
        CheckConstraint("best_of >= 1", name="ck_tournament_best_of"),
        CheckConstraint("grand_final_best_of >= 1", name="ck_tournament_gf_best_of"),
        Index("idx_tournament_status", "status"),
        Index("idx_tournament_status_start", "status", "start_time"),
    )

    @property
    def is_elimination(self) -> bool:
        return self.format in ELIMINATION_FORMATS

    @property
    def prize_pool(self) -> Decimal:
        return Decimal(self.entry_fee or 0) * (self.current_slots or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "format": self.format.value,
            "status": self.status.value,
            "total_slots": self.total_slots,
            "current_slots": self.current_slots,
            "current_round": self.current_round,
            "entry_fee": str(self.entry_fee),
            "prize_pool": str(self.prize_pool),
            "best_of": self.best_of,
            "grand_final_best_of": self.grand_final_best_of,
            "bracket_reset": self.bracket_reset,
            "expiry_policy": self.expiry_policy.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "prizes": [p.to_dict() for p in self.prizes],
        }


class TournamentPrize(BaseModel):
    """One row of the prize table: position → percentage of the pool."""
    __tablename__ = "tournament_prizes"

    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position = Column(Integer, nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)

    tournament = relationship("Tournament", back_populates="prizes")

    __table_args__ = (
        UniqueConstraint("tournament_id", "position", name="uq_prize_position"),
        CheckConstraint("position >= 1", name="ck_prize_position_positive"),
        CheckConstraint(
            "percentage >= 0 AND percentage <= 100",
            name="ck_prize_percentage_range"
        ),
    )

    def to_dict(self) -> dict:
        return {"position": self.position, "percentage": str(self.percentage)}
