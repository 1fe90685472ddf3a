from .base import Base, BaseModel, utcnow

from .tournament import (
    Tournament,
    TournamentPrize,
    TournamentFormat,
    TournamentStatus,
    ExpiryPolicy,
    ELIMINATION_FORMATS,
)
from .participant import Participant
from .match import Match, MatchStatus, BracketType, MatchSlot, REPORTABLE_STATUSES
from .series import Series, SeriesStatus
from .dispute import Dispute, DisputeStatus

__all__ = [
    "Base",
    "BaseModel",
    "utcnow",
    "Tournament",
    "TournamentPrize",
    "TournamentFormat",
    "TournamentStatus",
    "ExpiryPolicy",
    "ELIMINATION_FORMATS",
    "Participant",
    "Match",
    "MatchStatus",
    "BracketType",
    "MatchSlot",
    "REPORTABLE_STATUSES",
    "Series",
    "SeriesStatus",
    "Dispute",
    "DisputeStatus",
]
