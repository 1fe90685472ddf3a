"""
Prize Calculator

Pure function: prize table + pool + final standings → payouts.

Amounts are Decimal, quantized to the currency's minor unit with
ROUND_HALF_UP. The sum of payouts never exceeds the pool: whatever is left
between the rounded-down exact total and the sum of rounded shares is
added to the best-placed prize position, normally 1st. An overshoot is
taken back from the largest amounts, never pushing one below zero.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional

from tourney.errors import ValidationError, ErrorCode

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PrizeShare:
    position: int
    percentage: Decimal


@dataclass(frozen=True)
class Payout:
    position: int
    participant: Optional[Hashable]
    amount: Decimal


def _as_share(entry: Any) -> PrizeShare:
    if isinstance(entry, PrizeShare):
        return entry
    if isinstance(entry, Mapping):
        position, percentage = entry.get("position"), entry.get("percentage")
    elif isinstance(entry, (tuple, list)) and len(entry) == 2:
        position, percentage = entry
    else:
        position = getattr(entry, "position", None)
        percentage = getattr(entry, "percentage", None)

    try:
        return PrizeShare(position=int(position), percentage=Decimal(str(percentage)))
    except (TypeError, ValueError, InvalidOperation):
        raise ValidationError(
            "Prize entries need an integer position and a numeric percentage",
            code=ErrorCode.INVALID_PRIZE_TABLE,
            details={"entry": repr(entry)}
        )


class PrizeCalculator:

    @staticmethod
    def quantum(minor_units: int = 2) -> Decimal:
        return Decimal(1).scaleb(-minor_units)

    @staticmethod
    def validate_table(table: Iterable[Any], participant_count: Optional[int] = None) -> List[PrizeShare]:
        """
        Normalize and validate a prize table.

        Positions must be unique, >= 1 and (when participant_count is given)
        no larger than the field. Each percentage lies in [0, 100] and the
        total may not exceed 100.
        """
        shares = [_as_share(entry) for entry in table]
        seen = set()
        for share in shares:
            if share.position < 1:
                raise ValidationError(
                    f"Prize position must be >= 1, got {share.position}",
                    code=ErrorCode.INVALID_PRIZE_TABLE
                )
            if share.position in seen:
                raise ValidationError(
                    f"Duplicate prize position {share.position}",
                    code=ErrorCode.INVALID_PRIZE_TABLE
                )
            seen.add(share.position)
            if not Decimal(0) <= share.percentage <= HUNDRED:
                raise ValidationError(
                    f"Prize percentage for position {share.position} must be within [0, 100]",
                    code=ErrorCode.INVALID_PRIZE_TABLE,
                    details={"position": share.position, "percentage": str(share.percentage)}
                )
            if participant_count is not None and share.position > participant_count:
                raise ValidationError(
                    f"Prize position {share.position} exceeds participant count {participant_count}",
                    code=ErrorCode.INVALID_PRIZE_TABLE,
                    details={"position": share.position, "participants": participant_count}
                )

        total = sum((s.percentage for s in shares), Decimal(0))
        if total > HUNDRED:
            raise ValidationError(
                f"Prize percentages total {total}%, more than the pool",
                code=ErrorCode.INVALID_PRIZE_TABLE,
                details={"total": str(total)}
            )
        return sorted(shares, key=lambda s: s.position)

    @staticmethod
    def compute(
        table: Iterable[Any],
        pool: Decimal,
        standings: Mapping[int, Hashable],
        minor_units: int = 2,
    ) -> List[Payout]:
        """
        Payout per prize position.

        standings maps final position → participant. Positions in the table
        that nobody finished in are rejected.
        """
        pool = Decimal(str(pool))
        if pool < 0:
            raise ValidationError("Prize pool cannot be negative", details={"pool": str(pool)})

        shares = PrizeCalculator.validate_table(table, participant_count=len(standings))
        quantum = PrizeCalculator.quantum(minor_units)

        missing = [s.position for s in shares if s.position not in standings]
        if missing:
            raise ValidationError(
                "Prize positions have no finisher",
                code=ErrorCode.INVALID_PRIZE_TABLE,
                details={"positions": missing}
            )

        amounts: Dict[int, Decimal] = {}
        for share in shares:
            amounts[share.position] = (pool * share.percentage / HUNDRED).quantize(
                quantum, rounding=ROUND_HALF_UP
            )

        if shares:
            exact_total = pool * sum((s.percentage for s in shares), Decimal(0)) / HUNDRED
            residual = exact_total.quantize(quantum, rounding=ROUND_DOWN) - sum(amounts.values())
            if residual > 0:
                top = shares[0].position
                amounts[top] += residual
                logger.debug(f"Rounding residual {residual} assigned to position {top}")
            elif residual < 0:
                PrizeCalculator._take_overshoot(shares, amounts, -residual)

        return [
            Payout(position=s.position, participant=standings[s.position], amount=amounts[s.position])
            for s in shares
        ]

    @staticmethod
    def _take_overshoot(shares: List[PrizeShare], amounts: Dict[int, Decimal], overshoot: Decimal) -> None:
        """Trim the largest amounts until the total fits the pool; none drops below zero."""
        order = sorted(shares, key=lambda s: (-amounts[s.position], s.position))
        for share in order:
            if overshoot <= 0:
                break
            taken = min(amounts[share.position], overshoot)
            amounts[share.position] -= taken
            overshoot -= taken
            logger.debug(f"Rounding overshoot {taken} taken from position {share.position}")
