"""
Match model.

Bracket topology is arena-style: every match is a flat row and downstream
routing is an integer pointer (next_match_id / loser_next_match_id) plus
the slot the participant lands in. The pointers form a DAG.

State Flow:
scheduled → live → awaiting_confirmation → completed
awaiting_confirmation → disputed → completed (by dispute resolution)
scheduled/live → expired | forfeited (no-show when only one side checked in)
"""
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey,
    CheckConstraint, Index
)

from tourney.orm.base import BaseModel, enum_column_type


class MatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    FORFEITED = "forfeited"
    NO_CONTEST = "no_contest"
    EXPIRED = "expired"


class BracketType(str, Enum):
    WINNERS = "winners"
    LOSERS = "losers"
    FINALS = "finals"


class MatchSlot(str, Enum):
    PARTICIPANT1 = "participant1"
    PARTICIPANT2 = "participant2"

    @property
    def participant_column(self) -> str:
        return f"{self.value}_id"

    @property
    def source_column(self) -> str:
        return f"{self.value}_source_match_id"

    @property
    def ready_column(self) -> str:
        return f"{self.value}_ready_at"


# Statuses in which a player may still submit the first report
REPORTABLE_STATUSES = (MatchStatus.SCHEDULED, MatchStatus.LIVE)


class Match(BaseModel):
    __tablename__ = "matches"

    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    round_number = Column(Integer, nullable=False)
    bracket_type = Column(
        enum_column_type(BracketType),
        nullable=False,
        default=BracketType.WINNERS
    )
    bracket_position = Column(Integer, nullable=False, default=0)

    participant1_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    participant2_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    # Which upstream match wrote the slot; the exactly-once guard for advancement
    participant1_source_match_id = Column(Integer, nullable=True)
    participant2_source_match_id = Column(Integer, nullable=True)
    participant1_score = Column(Integer, nullable=True)
    participant2_score = Column(Integer, nullable=True)

    status = Column(
        enum_column_type(MatchStatus),
        nullable=False,
        default=MatchStatus.SCHEDULED
    )
    winner_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)

    reported_by_user_id = Column(Integer, nullable=True)
    confirmed_by_user_id = Column(Integer, nullable=True)
    reported_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    auto_confirm_at = Column(DateTime, nullable=True)
    warning_sent_at = Column(DateTime, nullable=True)
    auto_verified = Column(Boolean, nullable=False, default=False)
    evidence_url = Column(String(512), nullable=True)

    # Check-ins; at the report deadline a sole ready side wins by no-show
    participant1_ready_at = Column(DateTime, nullable=True)
    participant2_ready_at = Column(DateTime, nullable=True)
    live_at = Column(DateTime, nullable=True)
    report_deadline_at = Column(DateTime, nullable=True)
    reschedule_count = Column(Integer, nullable=False, default=0)
    resolution_reason = Column(String(64), nullable=True)

    next_match_id = Column(Integer, ForeignKey("matches.id"), nullable=True)
    next_match_slot = Column(enum_column_type(MatchSlot), nullable=True)
    loser_next_match_id = Column(Integer, ForeignKey("matches.id"), nullable=True)
    loser_next_match_slot = Column(enum_column_type(MatchSlot), nullable=True)

    series_id = Column(Integer, ForeignKey("series.id"), nullable=True, index=True)
    series_game_number = Column(Integer, nullable=True)

    settled_at = Column(DateTime, nullable=True)
    advanced_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("round_number >= 1", name="ck_match_round_positive"),
        CheckConstraint(
            "participant1_id IS NULL OR participant2_id IS NULL "
            "OR participant1_id != participant2_id",
            name="ck_match_distinct_participants"
        ),
        Index("idx_match_tournament_round", "tournament_id", "round_number"),
        Index("idx_match_status_auto_confirm", "status", "auto_confirm_at"),
        Index("idx_match_status_deadline", "status", "report_deadline_at"),
    )

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.next_match_id is None and self.loser_next_match_id is None

    @property
    def has_both_participants(self) -> bool:
        return self.participant1_id is not None and self.participant2_id is not None

    def slot_of(self, participant_id: int) -> Optional[MatchSlot]:
        if participant_id is not None and participant_id == self.participant1_id:
            return MatchSlot.PARTICIPANT1
        if participant_id is not None and participant_id == self.participant2_id:
            return MatchSlot.PARTICIPANT2
        return None

    def opponent_of(self, participant_id: int) -> Optional[int]:
        if participant_id == self.participant1_id:
            return self.participant2_id
        if participant_id == self.participant2_id:
            return self.participant1_id
        return None

    def sole_ready_participant(self) -> Optional[int]:
        """The participant who checked in when the opponent did not, else None."""
        p1_ready = self.participant1_ready_at is not None
        p2_ready = self.participant2_ready_at is not None
        if p1_ready and not p2_ready:
            return self.participant1_id
        if p2_ready and not p1_ready:
            return self.participant2_id
        return None

    def winner_and_loser(self) -> Tuple[Optional[int], Optional[int]]:
        if self.winner_id is None:
            return None, None
        return self.winner_id, self.opponent_of(self.winner_id)

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "round_number": self.round_number,
            "bracket_type": self.bracket_type.value,
            "bracket_position": self.bracket_position,
            "participant1_id": self.participant1_id,
            "participant2_id": self.participant2_id,
            "participant1_score": self.participant1_score,
            "participant2_score": self.participant2_score,
            "status": self.status.value,
            "winner_id": self.winner_id,
            "reported_by_user_id": self.reported_by_user_id,
            "confirmed_by_user_id": self.confirmed_by_user_id,
            "reported_at": iso(self.reported_at),
            "confirmed_at": iso(self.confirmed_at),
            "auto_confirm_at": iso(self.auto_confirm_at),
            "warning_sent_at": iso(self.warning_sent_at),
            "auto_verified": self.auto_verified,
            "evidence_url": self.evidence_url,
            "participant1_ready_at": iso(self.participant1_ready_at),
            "participant2_ready_at": iso(self.participant2_ready_at),
            "live_at": iso(self.live_at),
            "report_deadline_at": iso(self.report_deadline_at),
            "next_match_id": self.next_match_id,
            "next_match_slot": self.next_match_slot.value if self.next_match_slot else None,
            "loser_next_match_id": self.loser_next_match_id,
            "loser_next_match_slot": (
                self.loser_next_match_slot.value if self.loser_next_match_slot else None
            ),
            "series_id": self.series_id,
            "series_game_number": self.series_game_number,
        }
