"""
Tournament Orchestrator

Owns Tournament.status and current_round.

State Flow:
OPEN → LOCKED → LIVE → COMPLETED
OPEN | LOCKED → CANCELLED

Public methods run one transaction each: commit on success, rollback and
re-raise on any error, then deliver buffered events. on_match_settled and
complete_tournament are called from inside AdvancementEngine's
transaction and never commit themselves.
"""
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config.settings import EngineSettings
from tourney.errors import (
    ErrorCode, NotFoundError, PolicyError, StaleStateError, ValidationError
)
from tourney.orm.match import Match, MatchStatus, BracketType
from tourney.orm.participant import Participant
from tourney.orm.tournament import (
    Tournament, TournamentPrize, TournamentFormat, TournamentStatus, ExpiryPolicy
)
from tourney.services.bracket_generator import BracketGenerator, BracketPlan
from tourney.services.collaborators import (
    Clock, EventOutbox, Notifier, Wallet, system_clock,
    entry_reference, prize_reference, refund_reference
)
from tourney.services.prize_calculator import PrizeCalculator
from tourney.services.series_tracker import SeriesTracker

logger = logging.getLogger(__name__)

# Later elimination stages rank higher
BRACKET_RANK = {
    BracketType.WINNERS: 0,
    BracketType.LOSERS: 1,
    BracketType.FINALS: 2,
}


class TournamentOrchestrator:
    """
    Top-level tournament controller.

    Creates tournaments, handles registration, builds the bracket on start,
    keeps current_round in step with settled matches and pays out on
    completion.
    """

    VALID_TRANSITIONS = {
        TournamentStatus.OPEN: [TournamentStatus.LOCKED, TournamentStatus.CANCELLED],
        TournamentStatus.LOCKED: [TournamentStatus.LIVE, TournamentStatus.CANCELLED],
        TournamentStatus.LIVE: [TournamentStatus.COMPLETED],
        TournamentStatus.COMPLETED: [],
        TournamentStatus.CANCELLED: [],
    }

    def __init__(
        self,
        wallet: Wallet,
        notifier: Notifier,
        series_tracker: SeriesTracker,
        settings: EngineSettings,
        clock: Clock = system_clock,
    ):
        self.wallet = wallet
        self.notifier = notifier
        self.series_tracker = series_tracker
        self.settings = settings
        self.clock = clock

    @staticmethod
    def _is_valid_transition(current: TournamentStatus, target: TournamentStatus) -> bool:
        return target in TournamentOrchestrator.VALID_TRANSITIONS.get(current, [])

    # =========================================================================
    # Loading helpers
    # =========================================================================

    async def get_tournament(self, db: AsyncSession, tournament_id: int) -> Tournament:
        tournament = await db.get(Tournament, tournament_id, populate_existing=True)
        if not tournament:
            raise NotFoundError("Tournament", tournament_id)
        return tournament

    async def _participants(self, db: AsyncSession, tournament_id: int) -> List[Participant]:
        result = await db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament_id)
            .order_by(Participant.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _prizes(self, db: AsyncSession, tournament_id: int) -> List[TournamentPrize]:
        result = await db.execute(
            select(TournamentPrize)
            .where(TournamentPrize.tournament_id == tournament_id)
            .order_by(TournamentPrize.position)
        )
        return list(result.scalars().all())

    async def _transition(self, db: AsyncSession, tournament: Tournament,
                          target: TournamentStatus, **values) -> Tournament:
        current = tournament.status
        if not self._is_valid_transition(current, target):
            raise StaleStateError(
                f"Tournament {tournament.id} cannot move from {current.value} to {target.value}",
                code=ErrorCode.STATE_TRANSITION_INVALID,
                details={"current": current.value, "target": target.value}
            )
        result = await db.execute(
            update(Tournament)
            .where(Tournament.id == tournament.id, Tournament.status == current)
            .values(status=target, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(
                f"Tournament {tournament.id} was changed concurrently",
                details={"expected": current.value}
            )
        await db.refresh(tournament)
        logger.info(f"Tournament {tournament.id}: {current.value} → {target.value}")
        return tournament

    # =========================================================================
    # Creation & registration
    # =========================================================================

    async def create_tournament(
        self,
        db: AsyncSession,
        name: str,
        format: Any,
        total_slots: int,
        entry_fee: Any = Decimal("0"),
        prizes: Iterable[Any] = (),
        best_of: int = 1,
        grand_final_best_of: int = 1,
        bracket_reset: Optional[bool] = None,
        expiry_policy: Optional[Any] = None,
        created_by: Optional[int] = None,
        start_time: Optional[datetime] = None,
    ) -> Tournament:
        if not name or not name.strip():
            raise ValidationError("Tournament name cannot be empty")
        try:
            bracket_format = TournamentFormat(format)
        except ValueError:
            raise ValidationError(f"Unknown tournament format: {format}")
        try:
            policy = ExpiryPolicy(expiry_policy or self.settings.default_expiry_policy)
        except ValueError:
            raise ValidationError(f"Unknown expiry policy: {expiry_policy}")

        if total_slots is None or total_slots < 2:
            raise ValidationError(
                "A tournament needs at least two slots",
                code=ErrorCode.INSUFFICIENT_PARTICIPANTS,
                details={"total_slots": total_slots}
            )
        fee = Decimal(str(entry_fee))
        if fee < 0:
            raise ValidationError("Entry fee cannot be negative", details={"entry_fee": str(fee)})
        for field_name, value in (("best_of", best_of), ("grand_final_best_of", grand_final_best_of)):
            if value < 1 or value % 2 == 0:
                raise ValidationError(f"{field_name} must be an odd number >= 1", details={field_name: value})
        if policy == ExpiryPolicy.DOUBLE_FORFEIT and bracket_format != TournamentFormat.ROUND_ROBIN:
            raise ValidationError(
                "double_forfeit is only available for round robin tournaments",
                details={"format": bracket_format.value}
            )

        if start_time is not None and start_time.tzinfo is not None:
            start_time = start_time.astimezone(timezone.utc).replace(tzinfo=None)

        shares = PrizeCalculator.validate_table(prizes, participant_count=total_slots)

        try:
            tournament = Tournament(
                name=name.strip(),
                format=bracket_format,
                status=TournamentStatus.OPEN,
                total_slots=total_slots,
                current_slots=0,
                current_round=0,
                entry_fee=fee,
                best_of=best_of,
                grand_final_best_of=grand_final_best_of,
                bracket_reset=(
                    self.settings.default_bracket_reset if bracket_reset is None else bracket_reset
                ),
                expiry_policy=policy,
                created_by=created_by,
                start_time=start_time,
                prizes=[TournamentPrize(position=s.position, percentage=s.percentage) for s in shares],
            )
            db.add(tournament)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Created tournament {tournament.id} '{tournament.name}' "
            f"({bracket_format.value}, {total_slots} slots, fee {fee})"
        )
        return tournament

    async def join(self, db: AsyncSession, tournament_id: int, user_id: int,
                   gamer_tag: str) -> Participant:
        """
        Claim a slot, debit the entry fee, then create the participant.

        All three happen in one transaction: a failed debit leaves the slot
        count untouched.
        """
        outbox = EventOutbox()
        try:
            tournament = await self.get_tournament(db, tournament_id)
            if tournament.status != TournamentStatus.OPEN:
                raise PolicyError(
                    f"Tournament {tournament_id} is not open for registration",
                    details={"status": tournament.status.value}
                )
            if not gamer_tag or not gamer_tag.strip():
                raise ValidationError("gamer_tag cannot be empty")

            existing = await db.execute(
                select(Participant.id).where(
                    Participant.tournament_id == tournament_id,
                    Participant.user_id == user_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise PolicyError(
                    f"User {user_id} already joined tournament {tournament_id}",
                    code=ErrorCode.ALREADY_JOINED
                )

            result = await db.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.status == TournamentStatus.OPEN,
                    Tournament.current_slots < Tournament.total_slots,
                )
                .values(current_slots=Tournament.current_slots + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.refresh(tournament)
                if tournament.current_slots >= tournament.total_slots:
                    raise PolicyError(
                        f"Tournament {tournament_id} is full",
                        code=ErrorCode.TOURNAMENT_FULL
                    )
                raise StaleStateError(f"Tournament {tournament_id} changed during registration")

            if tournament.entry_fee and Decimal(tournament.entry_fee) > 0:
                await self.wallet.debit(
                    user_id, Decimal(tournament.entry_fee), entry_reference(tournament_id, user_id)
                )

            participant = Participant(
                tournament_id=tournament_id,
                user_id=user_id,
                gamer_tag=gamer_tag.strip(),
                checked_in=False,
            )
            db.add(participant)
            try:
                await db.flush()
            except DBIntegrityError:
                raise PolicyError(
                    f"User {user_id} already joined tournament {tournament_id}",
                    code=ErrorCode.ALREADY_JOINED
                )

            await db.refresh(tournament)
            outbox.add("tournament.joined", {
                "tournament_id": tournament_id,
                "participant_id": participant.id,
                "user_id": user_id,
                "current_slots": tournament.current_slots,
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"User {user_id} joined tournament {tournament_id} as participant {participant.id}")
        await outbox.dispatch(self.notifier)
        return participant

    async def check_in(self, db: AsyncSession, tournament_id: int, user_id: int) -> Participant:
        try:
            tournament = await self.get_tournament(db, tournament_id)
            if tournament.status not in (TournamentStatus.OPEN, TournamentStatus.LOCKED):
                raise PolicyError(
                    "Check-in is closed",
                    details={"status": tournament.status.value}
                )
            result = await db.execute(
                select(Participant).where(
                    Participant.tournament_id == tournament_id,
                    Participant.user_id == user_id,
                )
            )
            participant = result.scalar_one_or_none()
            if not participant:
                raise NotFoundError("Participant", user_id)
            participant.checked_in = True
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Participant {participant.id} checked in to tournament {tournament_id}")
        return participant

    # =========================================================================
    # Lock / start / cancel
    # =========================================================================

    async def lock(self, db: AsyncSession, tournament_id: int) -> Tournament:
        outbox = EventOutbox()
        try:
            tournament = await self.get_tournament(db, tournament_id)
            if tournament.current_slots < 2:
                raise ValidationError(
                    "At least two participants are required to lock",
                    code=ErrorCode.INSUFFICIENT_PARTICIPANTS,
                    details={"current_slots": tournament.current_slots}
                )
            PrizeCalculator.validate_table(
                await self._prizes(db, tournament_id), participant_count=tournament.current_slots
            )
            await self._transition(db, tournament, TournamentStatus.LOCKED)
            outbox.add("tournament.locked", {
                "tournament_id": tournament_id,
                "participants": tournament.current_slots,
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await outbox.dispatch(self.notifier)
        return tournament

    async def start(self, db: AsyncSession, tournament_id: int,
                    seed_order: Optional[Sequence[int]] = None) -> List[Match]:
        """
        Seed participants, persist the bracket and go live.

        seed_order lists participant ids best seed first; join order is
        used when it is omitted.
        """
        outbox = EventOutbox()
        try:
            tournament = await self.get_tournament(db, tournament_id)
            if not self._is_valid_transition(tournament.status, TournamentStatus.LIVE):
                raise StaleStateError(
                    f"Tournament {tournament_id} must be locked before it starts",
                    code=ErrorCode.STATE_TRANSITION_INVALID,
                    details={"status": tournament.status.value}
                )

            participants = await self._participants(db, tournament_id)
            ids = [p.id for p in participants]
            if seed_order is not None:
                seed_order = list(seed_order)
                if sorted(seed_order) != sorted(ids):
                    raise ValidationError(
                        "seed_order must list every participant exactly once",
                        details={"participants": ids, "seed_order": seed_order}
                    )
                ids = seed_order

            plan = BracketGenerator.generate(
                ids, tournament.format, tournament.best_of, tournament.grand_final_best_of
            )

            by_id = {p.id: p for p in participants}
            for seed, participant_id in enumerate(ids, start=1):
                by_id[participant_id].seed = seed

            matches = await self._persist_plan(db, tournament, plan)
            await self._transition(db, tournament, TournamentStatus.LIVE, current_round=1)
            outbox.add("tournament.started", {
                "tournament_id": tournament_id,
                "format": tournament.format.value,
                "matches": len(matches),
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Tournament {tournament_id} started with {len(matches)} matches")
        await outbox.dispatch(self.notifier)
        return matches

    async def _persist_plan(self, db: AsyncSession, tournament: Tournament,
                            plan: BracketPlan) -> List[Match]:
        now = self.clock()
        by_key: Dict[str, Match] = {}
        round_robin = tournament.format == TournamentFormat.ROUND_ROBIN

        for plan_match in plan.matches:
            playable = plan_match.participant1 is not None and plan_match.participant2 is not None
            deadline = None
            if playable:
                # Round robin rounds are due one window after another
                windows = plan_match.round_number if round_robin else 1
                deadline = now + self.settings.no_report_window * windows

            series_id = None
            if plan_match.best_of > 1 and not round_robin:
                series = await self.series_tracker.create_series(
                    db, tournament.id, plan_match.best_of,
                    plan_match.participant1, plan_match.participant2
                )
                series_id = series.id

            match = Match(
                tournament_id=tournament.id,
                round_number=plan_match.round_number,
                bracket_type=plan_match.bracket_type,
                bracket_position=plan_match.position,
                participant1_id=plan_match.participant1,
                participant2_id=plan_match.participant2,
                status=MatchStatus.SCHEDULED,
                report_deadline_at=deadline,
                series_id=series_id,
                series_game_number=1 if series_id else None,
                version=1,
            )
            db.add(match)
            by_key[plan_match.key] = match

        await db.flush()

        for plan_match in plan.matches:
            match = by_key[plan_match.key]
            if plan_match.next_key:
                match.next_match_id = by_key[plan_match.next_key].id
                match.next_match_slot = plan_match.next_slot
            if plan_match.loser_key:
                match.loser_next_match_id = by_key[plan_match.loser_key].id
                match.loser_next_match_slot = plan_match.loser_slot
        await db.flush()
        return list(by_key.values())

    async def cancel(self, db: AsyncSession, tournament_id: int,
                     reason: str = "cancelled_by_admin") -> Tournament:
        """Cancel before going live and refund every entry fee."""
        outbox = EventOutbox()
        try:
            tournament = await self.get_tournament(db, tournament_id)
            await self._transition(db, tournament, TournamentStatus.CANCELLED)

            participants = await self._participants(db, tournament_id)
            fee = Decimal(tournament.entry_fee or 0)
            if fee > 0:
                for participant in participants:
                    await self.wallet.credit(
                        participant.user_id, fee, refund_reference(tournament_id, participant.user_id)
                    )
            outbox.add("tournament.cancelled", {
                "tournament_id": tournament_id,
                "reason": reason,
                "refunded": [p.user_id for p in participants] if fee > 0 else [],
                "amount": str(fee),
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Tournament {tournament_id} cancelled ({reason}), {len(participants)} participants refunded")
        await outbox.dispatch(self.notifier)
        return tournament

    # =========================================================================
    # Progress & completion (called inside AdvancementEngine's transaction)
    # =========================================================================

    async def on_match_settled(self, db: AsyncSession, tournament_id: int,
                               outbox: EventOutbox) -> None:
        """
        Recompute current_round after a match settles.

        current_round is the lowest round that still has an unsettled match;
        it never moves backwards. With nothing unsettled the tournament
        completes.
        """
        result = await db.execute(
            select(func.count(Match.id), func.min(Match.round_number))
            .where(Match.tournament_id == tournament_id, Match.settled_at.is_(None))
        )
        remaining, lowest_round = result.one()

        if remaining == 0:
            await self.complete_tournament(db, tournament_id, outbox)
            return

        result = await db.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament_id,
                Tournament.status == TournamentStatus.LIVE,
                Tournament.current_round < lowest_round,
            )
            .values(current_round=lowest_round)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Tournament {tournament_id} advanced to round {lowest_round}")
            outbox.add("tournament.round_advanced", {
                "tournament_id": tournament_id,
                "current_round": lowest_round,
            })

    async def complete_tournament(self, db: AsyncSession, tournament_id: int,
                                  outbox: EventOutbox) -> Optional[Tournament]:
        tournament = await self.get_tournament(db, tournament_id)
        result = await db.execute(
            update(Tournament)
            .where(Tournament.id == tournament_id, Tournament.status == TournamentStatus.LIVE)
            .values(status=TournamentStatus.COMPLETED, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Tournament {tournament_id} already completed")
            return None
        await db.refresh(tournament)

        standings = await self.compute_standings(db, tournament)
        for position, participant in enumerate(standings, start=1):
            participant.final_standing = position

        quantum = PrizeCalculator.quantum(self.settings.currency_minor_units)
        payouts = PrizeCalculator.compute(
            await self._prizes(db, tournament_id),
            tournament.prize_pool,
            {p.final_standing: p for p in standings},
            minor_units=self.settings.currency_minor_units,
        )
        for participant in standings:
            participant.prize_amount = Decimal(0).quantize(quantum)
        for payout in payouts:
            payout.participant.prize_amount = payout.amount
            if payout.amount > 0:
                await self.wallet.credit(
                    payout.participant.user_id,
                    payout.amount,
                    prize_reference(tournament_id, payout.position),
                )
        await db.flush()

        logger.info(
            f"Tournament {tournament_id} completed: champion participant {standings[0].id}, "
            f"paid {sum((p.amount for p in payouts), Decimal(0))} of {tournament.prize_pool}"
        )
        outbox.add("tournament.completed", {
            "tournament_id": tournament_id,
            "standings": [
                {"participant_id": p.id, "user_id": p.user_id, "position": p.final_standing}
                for p in standings
            ],
            "payouts": [
                {"position": p.position, "participant_id": p.participant.id, "amount": str(p.amount)}
                for p in payouts
            ],
        })
        return tournament

    # =========================================================================
    # Standings
    # =========================================================================

    async def compute_standings(self, db: AsyncSession, tournament: Tournament) -> List[Participant]:
        """
        All participants, best first.

        Round robin: wins, score differential, points scored, seed.
        Elimination: the two finalists already hold 1 and 2; everyone else
        is ordered by how late they were knocked out, then by the final
        position of whoever knocked them out, then seed.
        """
        participants = await self._participants(db, tournament.id)

        def seed_key(p: Participant):
            return (p.seed if p.seed is not None else math.inf, p.id)

        if tournament.format == TournamentFormat.ROUND_ROBIN:
            return sorted(
                participants,
                key=lambda p: (-p.wins, -(p.score_for - p.score_against), -p.score_for) + seed_key(p)
            )

        finalists = sorted(
            [p for p in participants if p.final_standing in (1, 2)],
            key=lambda p: p.final_standing
        )
        rest = [p for p in participants if p.final_standing not in (1, 2)]

        match_ids = {p.eliminated_in_match_id for p in rest if p.eliminated_in_match_id}
        matches: Dict[int, Match] = {}
        if match_ids:
            result = await db.execute(select(Match).where(Match.id.in_(match_ids)))
            matches = {m.id: m for m in result.scalars().all()}

        def stage(p: Participant):
            match = matches.get(p.eliminated_in_match_id)
            if match is None:
                return (-1, -1)
            return (BRACKET_RANK[match.bracket_type], match.round_number)

        placed: Dict[int, int] = {p.id: p.final_standing for p in finalists}
        ordered = list(finalists)
        groups: Dict[tuple, List[Participant]] = {}
        for participant in rest:
            groups.setdefault(stage(participant), []).append(participant)

        for key in sorted(groups, reverse=True):
            def conqueror_position(p: Participant):
                match = matches.get(p.eliminated_in_match_id)
                if match is None or match.winner_id is None:
                    return math.inf
                return placed.get(match.winner_id, math.inf)

            group = sorted(groups[key], key=lambda p: (conqueror_position(p),) + seed_key(p))
            for participant in group:
                ordered.append(participant)
                placed[participant.id] = len(ordered)
        return ordered

    # =========================================================================
    # Read models
    # =========================================================================

    async def list_participants(self, db: AsyncSession, tournament_id: int) -> List[Participant]:
        await self.get_tournament(db, tournament_id)
        return await self._participants(db, tournament_id)

    async def list_matches(self, db: AsyncSession, tournament_id: int) -> List[Match]:
        await self.get_tournament(db, tournament_id)
        result = await db.execute(
            select(Match)
            .where(Match.tournament_id == tournament_id)
            .order_by(Match.round_number, Match.bracket_type, Match.bracket_position,
                      Match.series_game_number, Match.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_standings(self, db: AsyncSession, tournament_id: int) -> List[Dict[str, Any]]:
        """
        Final standings once completed; provisional ones before that
        (round robin tallies, or join/seed order for elimination).
        """
        tournament = await self.get_tournament(db, tournament_id)
        if tournament.status == TournamentStatus.COMPLETED:
            participants = sorted(
                await self._participants(db, tournament_id),
                key=lambda p: (p.final_standing or math.inf, p.id)
            )
        elif tournament.format == TournamentFormat.ROUND_ROBIN:
            participants = await self.compute_standings(db, tournament)
        else:
            participants = sorted(
                await self._participants(db, tournament_id),
                key=lambda p: (p.seed if p.seed is not None else math.inf, p.id)
            )

        return [
            dict(p.to_dict(), position=index)
            for index, p in enumerate(participants, start=1)
        ]
