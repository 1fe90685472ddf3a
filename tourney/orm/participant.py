"""
Tournament participant model.

One row per (tournament, user). Round-robin tallies and elimination
bookkeeping live here so final standings can be computed from rows alone.
"""
from sqlalchemy import (
    Column, String, Integer, Boolean, Numeric, ForeignKey,
    UniqueConstraint, CheckConstraint, Index
)

from tourney.orm.base import BaseModel


class Participant(BaseModel):
    __tablename__ = "tournament_participants"

    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(Integer, nullable=False)
    gamer_tag = Column(String(64), nullable=False)
    checked_in = Column(Boolean, nullable=False, default=False)
    seed = Column(Integer, nullable=True)

    final_standing = Column(Integer, nullable=True)
    prize_amount = Column(Numeric(12, 2), nullable=True)
    eliminated_in_match_id = Column(Integer, nullable=True)

    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    score_for = Column(Integer, nullable=False, default=0)
    score_against = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="uq_participant_tournament_user"),
        CheckConstraint("final_standing IS NULL OR final_standing >= 1", name="ck_participant_standing"),
        Index("idx_participant_tournament_seed", "tournament_id", "seed"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "user_id": self.user_id,
            "gamer_tag": self.gamer_tag,
            "checked_in": self.checked_in,
            "seed": self.seed,
            "final_standing": self.final_standing,
            "prize_amount": str(self.prize_amount) if self.prize_amount is not None else None,
            "wins": self.wins,
            "losses": self.losses,
        }
