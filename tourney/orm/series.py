"""
Best-of-N series wrapping repeated matches between the same two participants.
"""
from enum import Enum

from sqlalchemy import Column, Integer, DateTime, ForeignKey, CheckConstraint

from tourney.orm.base import BaseModel, enum_column_type


class SeriesStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class Series(BaseModel):
    __tablename__ = "series"

    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    best_of = Column(Integer, nullable=False, default=3)
    participant1_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    participant2_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    participant1_wins = Column(Integer, nullable=False, default=0)
    participant2_wins = Column(Integer, nullable=False, default=0)
    status = Column(
        enum_column_type(SeriesStatus),
        nullable=False,
        default=SeriesStatus.ACTIVE
    )
    winner_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("best_of >= 1 AND best_of % 2 = 1", name="ck_series_best_of_odd"),
        CheckConstraint("participant1_wins >= 0", name="ck_series_p1_wins"),
        CheckConstraint("participant2_wins >= 0", name="ck_series_p2_wins"),
    )

    @property
    def wins_needed(self) -> int:
        return self.best_of // 2 + 1

    @property
    def games_played(self) -> int:
        return self.participant1_wins + self.participant2_wins

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "best_of": self.best_of,
            "participant1_id": self.participant1_id,
            "participant2_id": self.participant2_id,
            "participant1_wins": self.participant1_wins,
            "participant2_wins": self.participant2_wins,
            "status": self.status.value,
            "winner_id": self.winner_id,
        }
