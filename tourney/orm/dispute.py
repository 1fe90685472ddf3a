"""
Dispute raised when the opponent contests a reported result.

Status flows: OPEN → UNDER_REVIEW → RESOLVED
Disputes are never deleted; a resolved row is the audit record.
"""
from enum import Enum

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, Index

from tourney.orm.base import BaseModel, enum_column_type


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class Dispute(BaseModel):
    __tablename__ = "disputes"

    match_id = Column(
        Integer,
        ForeignKey("matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    raised_by_user_id = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    evidence_url = Column(String(512), nullable=True)

    status = Column(
        enum_column_type(DisputeStatus),
        nullable=False,
        default=DisputeStatus.OPEN
    )
    reviewed_by_user_id = Column(Integer, nullable=True)
    resolution_details = Column(Text, nullable=True)
    resolved_by_user_id = Column(Integer, nullable=True)
    resolved_winner_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_dispute_match_status", "match_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "raised_by_user_id": self.raised_by_user_id,
            "reason": self.reason,
            "evidence_url": self.evidence_url,
            "status": self.status.value,
            "resolution_details": self.resolution_details,
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolved_winner_id": self.resolved_winner_id,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }
