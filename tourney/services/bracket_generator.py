"""
Bracket Generator

Pure function: seeded participant list + format → match graph.

Nothing here touches the database. The output is a BracketPlan whose
MatchPlans reference each other by string key; TournamentOrchestrator
turns keys into row ids when it persists the plan.

Topology
--------
Single elimination pads to the next power of two P = 2^k and pairs round 1
by standard seeding (1 vs P, 2 vs P-1, ... arranged so seeds 1 and 2 can
only meet in the final). A match at position i feeds round+1 position i//2,
into participant1 when i is even and participant2 when odd.

Double elimination adds a losers bracket of 2(k-1) rounds:
    LB round 1        losers of WB round 1, paired
    LB round 2j       winners of LB round 2j-1 (slot 1) vs
                      losers dropping from WB round j+1 (slot 2)
    LB round 2j+1     winners of LB round 2j, paired
Drops into LB round 2j are mirrored on odd j so a dropped player does not
immediately meet the opponent whose bracket half they came from.
So WB round 1 losers drop to LB round 1, WB round r >= 2 losers to LB
round 2r-2. The grand final puts the WB champion in slot 1 and the LB
champion in slot 2.

Byes are collapsed out of the structure before anything is emitted: a node
with one bye slot forwards its real source as its winner and a bye as its
loser. Single elimination therefore always yields N-1 matches and double
elimination 2N-2 (before any bracket reset).

Round robin uses the circle method; its matches carry no pointers.
"""
import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from tourney.errors import ValidationError, IntegrityError, ErrorCode
from tourney.orm.match import BracketType, MatchSlot
from tourney.orm.tournament import TournamentFormat

logger = logging.getLogger(__name__)


# =============================================================================
# Plan types
# =============================================================================

@dataclass
class MatchPlan:
    key: str
    round_number: int
    bracket_type: BracketType
    position: int
    participant1: Optional[Hashable] = None
    participant2: Optional[Hashable] = None
    next_key: Optional[str] = None
    next_slot: Optional[MatchSlot] = None
    loser_key: Optional[str] = None
    loser_slot: Optional[MatchSlot] = None
    best_of: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.next_key is None and self.loser_key is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["bracket_type"] = self.bracket_type.value
        data["next_slot"] = self.next_slot.value if self.next_slot else None
        data["loser_slot"] = self.loser_slot.value if self.loser_slot else None
        return data


@dataclass
class BracketPlan:
    format: TournamentFormat
    participants: List[Hashable]
    matches: List[MatchPlan] = field(default_factory=list)

    def by_key(self) -> Dict[str, MatchPlan]:
        return {m.key: m for m in self.matches}

    def terminal_matches(self) -> List[MatchPlan]:
        return [m for m in self.matches if m.is_terminal]

    def rounds(self, bracket_type: Optional[BracketType] = None) -> int:
        numbers = [
            m.round_number for m in self.matches
            if bracket_type is None or m.bracket_type == bracket_type
        ]
        return max(numbers) if numbers else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format.value,
            "participants": list(self.participants),
            "match_count": len(self.matches),
            "matches": [m.to_dict() for m in self.matches],
        }


# =============================================================================
# Structural graph (pre-collapse)
# =============================================================================

# Slot sources
_BYE = ("bye", None)


def _seed(ref):
    return ("seed", ref)


def _winner(key):
    return ("winner", key)


def _loser(key):
    return ("loser", key)


@dataclass
class _Node:
    key: str
    round_number: int
    bracket_type: BracketType
    position: int
    sources: Tuple[tuple, tuple]
    best_of: int = 1


def standard_seed_order(size: int) -> List[int]:
    """
    1-based seed numbers in bracket order for a power-of-two field.

    standard_seed_order(8) == [1, 8, 4, 5, 2, 7, 3, 6]
    """
    if size < 2 or size & (size - 1):
        raise ValidationError(f"Bracket size must be a power of two >= 2, got {size}")
    order = [1, 2]
    while len(order) < size:
        total = len(order) * 2 + 1
        order = [s for seed in order for s in (seed, total - seed)]
    return order


def _wb_key(round_number: int, position: int) -> str:
    return f"W{round_number}M{position}"


def _lb_key(round_number: int, position: int) -> str:
    return f"L{round_number}M{position}"


def _winners_bracket(participants: Sequence[Hashable], size: int, best_of: int) -> List[_Node]:
    n = len(participants)
    order = standard_seed_order(size)
    rounds = int(math.log2(size))
    nodes = []

    for i in range(size // 2):
        pair = []
        for seed in (order[2 * i], order[2 * i + 1]):
            pair.append(_seed(participants[seed - 1]) if seed <= n else _BYE)
        nodes.append(_Node(_wb_key(1, i), 1, BracketType.WINNERS, i, tuple(pair), best_of))

    for r in range(2, rounds + 1):
        for i in range(size // (2 ** r)):
            sources = (_winner(_wb_key(r - 1, 2 * i)), _winner(_wb_key(r - 1, 2 * i + 1)))
            nodes.append(_Node(_wb_key(r, i), r, BracketType.WINNERS, i, sources, best_of))
    return nodes


def _losers_bracket(size: int, best_of: int) -> List[_Node]:
    k = int(math.log2(size))
    nodes = []
    if k < 2:
        return nodes

    for i in range(size // 4):
        sources = (_loser(_wb_key(1, 2 * i)), _loser(_wb_key(1, 2 * i + 1)))
        nodes.append(_Node(_lb_key(1, i), 1, BracketType.LOSERS, i, sources, best_of))

    for j in range(1, k):
        drop_round = 2 * j
        count = size // (2 ** (j + 1))
        for i in range(count):
            wb_index = count - 1 - i if j % 2 == 1 else i
            sources = (
                _winner(_lb_key(drop_round - 1, i)),
                _loser(_wb_key(j + 1, wb_index)),
            )
            nodes.append(_Node(_lb_key(drop_round, i), drop_round, BracketType.LOSERS, i, sources, best_of))

        if j <= k - 2:
            merge_round = drop_round + 1
            for i in range(count // 2):
                sources = (
                    _winner(_lb_key(drop_round, 2 * i)),
                    _winner(_lb_key(drop_round, 2 * i + 1)),
                )
                nodes.append(_Node(_lb_key(merge_round, i), merge_round, BracketType.LOSERS, i, sources, best_of))
    return nodes


def grand_final_round(size: int) -> int:
    """Round number used for the grand final of a double-elimination field."""
    k = int(math.log2(size))
    return max(k, 2 * k - 2) + 1


def _collapse(nodes: List[_Node], bracket_format: TournamentFormat) -> BracketPlan:
    """
    Remove bye nodes and wire pointers between the remaining real matches.

    nodes must be in topological order (every source precedes its consumer).
    """
    outputs: Dict[str, Tuple[tuple, tuple]] = {}
    real: Dict[str, MatchPlan] = {}
    plans: List[MatchPlan] = []

    def resolve(source):
        kind, ref = source
        if kind in ("winner", "loser") and ref in outputs:
            winner_out, loser_out = outputs[ref]
            return winner_out if kind == "winner" else loser_out
        return source

    for node in nodes:
        slot1, slot2 = (resolve(s) for s in node.sources)

        if slot1 == _BYE or slot2 == _BYE:
            forwarded = slot2 if slot1 == _BYE else slot1
            outputs[node.key] = (forwarded, _BYE)
            continue

        plan = MatchPlan(
            key=node.key,
            round_number=node.round_number,
            bracket_type=node.bracket_type,
            position=node.position,
            best_of=node.best_of,
        )
        for slot, source in ((MatchSlot.PARTICIPANT1, slot1), (MatchSlot.PARTICIPANT2, slot2)):
            kind, ref = source
            if kind == "seed":
                setattr(plan, slot.value, ref)
                continue
            upstream = real[ref]
            if kind == "winner":
                if upstream.next_key is not None:
                    raise IntegrityError(f"Winner of {ref} routed twice")
                upstream.next_key, upstream.next_slot = node.key, slot
            else:
                if upstream.loser_key is not None:
                    raise IntegrityError(f"Loser of {ref} routed twice")
                upstream.loser_key, upstream.loser_slot = node.key, slot

        real[node.key] = plan
        plans.append(plan)

    return BracketPlan(format=bracket_format, participants=[], matches=plans)


def _round_robin(participants: Sequence[Hashable]) -> List[MatchPlan]:
    field_ = list(participants)
    if len(field_) % 2:
        field_.append(None)
    n = len(field_)
    plans = []

    for r in range(1, n):
        position = 0
        for i in range(n // 2):
            home, away = field_[i], field_[n - 1 - i]
            if home is None or away is None:
                continue
            plans.append(MatchPlan(
                key=f"RR{r}M{position}",
                round_number=r,
                bracket_type=BracketType.WINNERS,
                position=position,
                participant1=home,
                participant2=away,
            ))
            position += 1
        # Circle method: first entry fixed, the rest rotate one step
        field_ = [field_[0], field_[-1]] + field_[1:-1]
    return plans


# =============================================================================
# Public API
# =============================================================================

class BracketGenerator:
    """
    Builds the initial match graph for a tournament.

    Participants are any hashable references (row ids in production,
    names in previews) ordered by seed, best first.
    """

    @staticmethod
    def _validate(participants: Sequence[Hashable], bracket_format, best_of: int,
                  grand_final_best_of: int) -> TournamentFormat:
        try:
            bracket_format = TournamentFormat(bracket_format)
        except ValueError:
            raise ValidationError(
                f"Unknown tournament format: {bracket_format}",
                details={"allowed": [f.value for f in TournamentFormat]}
            )

        if len(participants) < 2:
            raise ValidationError(
                "At least two participants are required",
                code=ErrorCode.INSUFFICIENT_PARTICIPANTS,
                details={"participants": len(participants)}
            )
        if any(p is None for p in participants):
            raise ValidationError("Participant references cannot be empty")
        if len(set(participants)) != len(participants):
            raise ValidationError("Participants must be unique")

        for name, value in (("best_of", best_of), ("grand_final_best_of", grand_final_best_of)):
            if value < 1 or value % 2 == 0:
                raise ValidationError(f"{name} must be an odd number >= 1", details={name: value})
        return bracket_format

    @staticmethod
    def generate(
        participants: Sequence[Hashable],
        bracket_format,
        best_of: int = 1,
        grand_final_best_of: int = 1,
    ) -> BracketPlan:
        bracket_format = BracketGenerator._validate(
            participants, bracket_format, best_of, grand_final_best_of
        )
        participants = list(participants)

        if bracket_format == TournamentFormat.ROUND_ROBIN:
            plan = BracketPlan(
                format=bracket_format,
                participants=participants,
                matches=_round_robin(participants),
            )
            logger.info(f"Generated round robin: {len(participants)} players, {len(plan.matches)} matches")
            return plan

        size = 2 ** max(1, math.ceil(math.log2(len(participants))))
        nodes = _winners_bracket(participants, size, best_of)

        if bracket_format == TournamentFormat.DOUBLE_ELIMINATION:
            nodes.extend(_losers_bracket(size, best_of))
            wb_final = _wb_key(int(math.log2(size)), 0)
            k = int(math.log2(size))
            lb_champion = _winner(_lb_key(2 * k - 2, 0)) if k >= 2 else _loser(wb_final)
            nodes.append(_Node(
                "GF",
                grand_final_round(size),
                BracketType.FINALS,
                0,
                (_winner(wb_final), lb_champion),
                grand_final_best_of,
            ))

        plan = _collapse(nodes, bracket_format)
        plan.participants = participants
        logger.info(
            f"Generated {bracket_format.value}: {len(participants)} players, "
            f"bracket size {size}, {len(plan.matches)} matches"
        )
        return plan
