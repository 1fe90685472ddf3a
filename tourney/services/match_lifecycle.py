"""
Match Lifecycle

State machine for a single match.

State Flow:
SCHEDULED → LIVE (informational, reporting is allowed in both)
SCHEDULED | LIVE → AWAITING_CONFIRMATION (first report)
AWAITING_CONFIRMATION → COMPLETED (opponent confirms, or auto-confirm)
AWAITING_CONFIRMATION → DISPUTED (opponent contests) → COMPLETED (resolution)
SCHEDULED | LIVE | AWAITING_CONFIRMATION → FORFEITED (admin)
SCHEDULED | LIVE → EXPIRED | NO_CONTEST (no report before the deadline)
SCHEDULED | LIVE → FORFEITED (deadline passed, only one side checked in)
NO_CONTEST → SCHEDULED (admin replay) | FORFEITED (admin)

Settled matches (settled_at set) are COMPLETED, FORFEITED and EXPIRED;
NO_CONTEST and DISPUTED hold the bracket until an admin acts.

Every transition is a version- and status-guarded UPDATE, so a player's
confirm and the sweep's auto-confirm cannot both succeed.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config.settings import EngineSettings
from tourney.errors import (
    ErrorCode, NotFoundError, PolicyError, StaleStateError, ValidationError
)
from tourney.orm.dispute import Dispute, DisputeStatus
from tourney.orm.match import Match, MatchStatus, REPORTABLE_STATUSES
from tourney.orm.participant import Participant
from tourney.orm.tournament import Tournament, TournamentStatus, ExpiryPolicy
from tourney.services.advancement_engine import AdvancementEngine
from tourney.services.collaborators import Clock, EventOutbox, Notifier, system_clock
from tourney.services.match_guard import guarded_update, load_match

logger = logging.getLogger(__name__)

NO_SHOW = "no_show"


class MatchLifecycle:
    """
    Reporting, confirmation and timeout handling for matches.
    """

    VALID_TRANSITIONS = {
        MatchStatus.SCHEDULED: [
            MatchStatus.LIVE,
            MatchStatus.AWAITING_CONFIRMATION,
            MatchStatus.FORFEITED,
            MatchStatus.EXPIRED,
            MatchStatus.NO_CONTEST,
        ],
        MatchStatus.LIVE: [
            MatchStatus.AWAITING_CONFIRMATION,
            MatchStatus.FORFEITED,
            MatchStatus.EXPIRED,
            MatchStatus.NO_CONTEST,
        ],
        MatchStatus.AWAITING_CONFIRMATION: [
            MatchStatus.COMPLETED,
            MatchStatus.DISPUTED,
            MatchStatus.FORFEITED,
        ],
        MatchStatus.DISPUTED: [MatchStatus.COMPLETED],
        MatchStatus.NO_CONTEST: [MatchStatus.SCHEDULED, MatchStatus.FORFEITED],
        MatchStatus.COMPLETED: [],
        MatchStatus.FORFEITED: [],
        MatchStatus.EXPIRED: [],
    }

    def __init__(self, advancement: AdvancementEngine, notifier: Notifier,
                 settings: EngineSettings, clock: Clock = system_clock):
        self.advancement = advancement
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    @staticmethod
    def _is_valid_transition(current: MatchStatus, target: MatchStatus) -> bool:
        return target in MatchLifecycle.VALID_TRANSITIONS.get(current, [])

    @classmethod
    def sources_for(cls, target: MatchStatus) -> Tuple[MatchStatus, ...]:
        """Every status from which target is reachable."""
        return tuple(s for s, targets in cls.VALID_TRANSITIONS.items() if target in targets)

    def _require_transition(self, match: Match, target: MatchStatus) -> None:
        if not self._is_valid_transition(match.status, target):
            raise StaleStateError(
                f"Match {match.id} is {match.status.value}, cannot move to {target.value}",
                code=ErrorCode.STATE_TRANSITION_INVALID,
                details={"match_id": match.id, "current": match.status.value, "target": target.value}
            )

    async def _participant_for_user(self, db: AsyncSession, match: Match,
                                    user_id: int) -> Participant:
        result = await db.execute(
            select(Participant).where(
                Participant.tournament_id == match.tournament_id,
                Participant.user_id == user_id,
            )
        )
        participant = result.scalar_one_or_none()
        if participant is None or match.slot_of(participant.id) is None:
            raise PolicyError(
                f"User {user_id} is not playing match {match.id}",
                code=ErrorCode.NOT_A_PARTICIPANT,
                details={"match_id": match.id, "user_id": user_id}
            )
        return participant

    async def _opponent_check(self, db: AsyncSession, match: Match, user_id: int) -> Participant:
        """The acting user must be the participant who did not report."""
        participant = await self._participant_for_user(db, match, user_id)
        if user_id == match.reported_by_user_id:
            raise PolicyError(
                "The reporting player cannot confirm or contest their own report",
                code=ErrorCode.POLICY_VIOLATION,
                details={"match_id": match.id}
            )
        return participant

    async def _finish(self, db: AsyncSession, outbox: EventOutbox) -> None:
        await db.commit()
        await outbox.dispatch(self.notifier)

    # =========================================================================
    # Player actions
    # =========================================================================

    async def report(
        self,
        db: AsyncSession,
        match_id: int,
        user_id: int,
        participant1_score: int,
        participant2_score: int,
        evidence_url: Optional[str] = None,
    ) -> Match:
        """First result report; opens the grace window."""
        outbox = EventOutbox()
        try:
            match = await load_match(db, match_id)
            tournament = await db.get(Tournament, match.tournament_id, populate_existing=True)
            if tournament.status != TournamentStatus.LIVE:
                raise PolicyError(
                    f"Tournament {tournament.id} is not live",
                    details={"status": tournament.status.value}
                )
            reporter = await self._participant_for_user(db, match, user_id)
            if not match.has_both_participants:
                raise PolicyError(f"Match {match_id} is still waiting for an opponent")
            self._require_transition(match, MatchStatus.AWAITING_CONFIRMATION)

            for score in (participant1_score, participant2_score):
                if score is None or isinstance(score, bool) or not isinstance(score, int) or score < 0:
                    raise ValidationError(
                        "Scores must be non-negative integers",
                        code=ErrorCode.INVALID_SCORE,
                        details={"participant1_score": participant1_score,
                                 "participant2_score": participant2_score}
                    )
            if participant1_score == participant2_score:
                raise ValidationError(
                    "A match result cannot be a tie",
                    code=ErrorCode.INVALID_SCORE,
                    details={"score": [participant1_score, participant2_score]}
                )

            winner_id = (
                match.participant1_id if participant1_score > participant2_score
                else match.participant2_id
            )
            now = self.clock()
            await guarded_update(
                db, match, REPORTABLE_STATUSES,
                status=MatchStatus.AWAITING_CONFIRMATION,
                participant1_score=participant1_score,
                participant2_score=participant2_score,
                winner_id=winner_id,
                reported_by_user_id=user_id,
                reported_at=now,
                auto_confirm_at=now + self.settings.grace_window,
                evidence_url=evidence_url,
            )
            outbox.add("match.awaiting_confirmation", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "reported_by_participant_id": reporter.id,
                "winner_id": winner_id,
                "auto_confirm_at": match.auto_confirm_at.isoformat(),
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Match {match_id} reported by user {user_id}: "
            f"{participant1_score}-{participant2_score}, auto-confirm at {match.auto_confirm_at}"
        )
        return match

    async def confirm(self, db: AsyncSession, match_id: int, user_id: int) -> Match:
        outbox = EventOutbox()
        try:
            match = await load_match(db, match_id)
            await self._opponent_check(db, match, user_id)
            self._require_transition(match, MatchStatus.COMPLETED)
            now = self.clock()
            await guarded_update(
                db, match, [MatchStatus.AWAITING_CONFIRMATION],
                status=MatchStatus.COMPLETED,
                confirmed_by_user_id=user_id,
                confirmed_at=now,
                auto_verified=False,
                settled_at=now,
            )
            await self.advancement.advance(db, match, outbox)
            outbox.add("match.completed", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "winner_id": match.winner_id,
                "auto_verified": False,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} confirmed by user {user_id}")
        return match

    async def contest(self, db: AsyncSession, match_id: int, user_id: int, reason: str,
                      evidence_url: Optional[str] = None) -> Dispute:
        """Opponent disputes the report; the match freezes until resolution."""
        outbox = EventOutbox()
        try:
            if not reason or not reason.strip():
                raise ValidationError("A dispute needs a reason")
            match = await load_match(db, match_id)
            await self._opponent_check(db, match, user_id)
            self._require_transition(match, MatchStatus.DISPUTED)
            await guarded_update(db, match, [MatchStatus.AWAITING_CONFIRMATION], status=MatchStatus.DISPUTED)

            dispute = Dispute(
                match_id=match.id,
                raised_by_user_id=user_id,
                reason=reason.strip(),
                evidence_url=evidence_url,
                status=DisputeStatus.OPEN,
            )
            db.add(dispute)
            await db.flush()
            outbox.add("match.disputed", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "dispute_id": dispute.id,
                "raised_by_user_id": user_id,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} disputed by user {user_id} (dispute {dispute.id})")
        return dispute

    async def mark_ready(self, db: AsyncSession, match_id: int, user_id: int) -> Match:
        """
        Check a player in for a playable match.

        Repeat check-ins are no-ops. Status and version are untouched, so a
        check-in never makes the opponent's report stale.
        """
        outbox = EventOutbox()
        try:
            match = await load_match(db, match_id)
            if match.status not in REPORTABLE_STATUSES:
                raise StaleStateError(
                    f"Match {match_id} is {match.status.value}, check-in is closed",
                    code=ErrorCode.STATE_TRANSITION_INVALID,
                    details={"match_id": match_id, "current": match.status.value}
                )
            if not match.has_both_participants:
                raise PolicyError(f"Match {match_id} is still waiting for an opponent")
            participant = await self._participant_for_user(db, match, user_id)
            ready_column = getattr(Match, match.slot_of(participant.id).ready_column)

            result = await db.execute(
                update(Match)
                .where(
                    Match.id == match_id,
                    Match.status.in_(REPORTABLE_STATUSES),
                    ready_column.is_(None),
                )
                .values({ready_column: self.clock()})
                .execution_options(synchronize_session=False)
            )
            await db.refresh(match)
            if result.rowcount != 1:
                if match.status not in REPORTABLE_STATUSES:
                    raise StaleStateError(f"Match {match_id} was changed concurrently")
                await db.commit()
                return match

            outbox.add("match.ready", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "participant_id": participant.id,
                "both_ready": match.sole_ready_participant() is None,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id}: participant {participant.id} checked in")
        return match

    # =========================================================================
    # Time-based transitions (driven by TimeoutScheduler)
    # =========================================================================

    async def auto_confirm(self, db: AsyncSession, match_id: int,
                           now: Optional[datetime] = None) -> Match:
        outbox = EventOutbox()
        try:
            now = now or self.clock()
            match = await load_match(db, match_id)
            if match.status != MatchStatus.AWAITING_CONFIRMATION:
                raise StaleStateError(f"Match {match_id} is no longer awaiting confirmation")
            if match.auto_confirm_at is None or match.auto_confirm_at > now:
                raise PolicyError(
                    f"Match {match_id} grace window has not elapsed",
                    details={"auto_confirm_at": str(match.auto_confirm_at)}
                )
            await guarded_update(
                db, match, [MatchStatus.AWAITING_CONFIRMATION],
                status=MatchStatus.COMPLETED,
                confirmed_at=now,
                auto_verified=True,
                settled_at=now,
            )
            await self.advancement.advance(db, match, outbox)
            outbox.add("match.completed", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "winner_id": match.winner_id,
                "auto_verified": True,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} auto-confirmed, winner {match.winner_id}")
        return match

    async def send_warning(self, db: AsyncSession, match_id: int,
                           now: Optional[datetime] = None) -> bool:
        """
        Fire match.warning once per report. Does not touch status or
        version, so it never makes a player's confirm stale.
        """
        outbox = EventOutbox()
        try:
            now = now or self.clock()
            match = await load_match(db, match_id)
            if match.auto_confirm_at is None:
                return False
            if now < match.auto_confirm_at - self.settings.warning_offset:
                return False

            result = await db.execute(
                update(Match)
                .where(
                    Match.id == match_id,
                    Match.status == MatchStatus.AWAITING_CONFIRMATION,
                    Match.warning_sent_at.is_(None),
                )
                .values(warning_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False
            await db.refresh(match)
            outbox.add("match.warning", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "auto_confirm_at": match.auto_confirm_at.isoformat(),
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} auto-confirm warning sent")
        return True

    async def expire(self, db: AsyncSession, match_id: int,
                     now: Optional[datetime] = None) -> Match:
        """
        Resolve a playable match nobody reported.

        A match where only one side checked in is forfeited to that side.
        Otherwise the tournament's expiry policy decides.
        """
        outbox = EventOutbox()
        try:
            now = now or self.clock()
            match = await load_match(db, match_id)
            if match.status not in REPORTABLE_STATUSES:
                raise StaleStateError(f"Match {match_id} is {match.status.value}, nothing to expire")
            if match.report_deadline_at is None or match.report_deadline_at > now:
                raise PolicyError(
                    f"Match {match_id} report deadline has not passed",
                    details={"report_deadline_at": str(match.report_deadline_at)}
                )
            tournament = await db.get(Tournament, match.tournament_id, populate_existing=True)
            policy = tournament.expiry_policy
            ready_winner = match.sole_ready_participant()

            if ready_winner is not None:
                await guarded_update(
                    db, match, REPORTABLE_STATUSES,
                    status=MatchStatus.FORFEITED,
                    winner_id=ready_winner,
                    confirmed_at=now,
                    resolution_reason=NO_SHOW,
                    settled_at=now,
                )
                await self.advancement.advance(db, match, outbox)
                event = "match.forfeited"
            elif policy == ExpiryPolicy.RESCHEDULE:
                await guarded_update(
                    db, match, REPORTABLE_STATUSES,
                    report_deadline_at=now + self.settings.no_report_window,
                    reschedule_count=match.reschedule_count + 1,
                )
                event = "match.rescheduled"
            elif policy == ExpiryPolicy.HIGHER_SEED_ADVANCES:
                winner_id = await self._better_seed(db, match)
                await guarded_update(
                    db, match, REPORTABLE_STATUSES,
                    status=MatchStatus.EXPIRED,
                    winner_id=winner_id,
                    resolution_reason=policy.value,
                    settled_at=now,
                )
                await self.advancement.advance(db, match, outbox)
                event = "match.expired"
            elif policy == ExpiryPolicy.DOUBLE_FORFEIT:
                await guarded_update(
                    db, match, REPORTABLE_STATUSES,
                    status=MatchStatus.EXPIRED,
                    winner_id=None,
                    resolution_reason=policy.value,
                    settled_at=now,
                )
                await self.advancement.advance(db, match, outbox)
                event = "match.expired"
            else:
                await guarded_update(
                    db, match, REPORTABLE_STATUSES,
                    status=MatchStatus.NO_CONTEST,
                    resolution_reason=policy.value,
                )
                event = "match.no_contest"

            outbox.add(event, {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "policy": policy.value,
                "reason": match.resolution_reason,
                "winner_id": match.winner_id,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} passed its report deadline, policy {policy.value} → {match.status.value} (reason {match.resolution_reason})")
        return match

    async def _better_seed(self, db: AsyncSession, match: Match) -> int:
        p1 = await db.get(Participant, match.participant1_id)
        p2 = await db.get(Participant, match.participant2_id)
        seed1 = p1.seed if p1.seed is not None else p1.id
        seed2 = p2.seed if p2.seed is not None else p2.id
        return p1.id if seed1 <= seed2 else p2.id

    # =========================================================================
    # Admin actions
    # =========================================================================

    async def mark_live(self, db: AsyncSession, match_id: int) -> Match:
        """SCHEDULED → LIVE. A live match must be reported within the live window."""
        try:
            match = await load_match(db, match_id)
            self._require_transition(match, MatchStatus.LIVE)
            if not match.has_both_participants:
                raise PolicyError(f"Match {match_id} is still waiting for an opponent")
            live_at = self.clock()
            values = {"status": MatchStatus.LIVE, "live_at": live_at}
            live_deadline = live_at + self.settings.live_report_window
            if match.report_deadline_at is None or live_deadline < match.report_deadline_at:
                values["report_deadline_at"] = live_deadline
            await guarded_update(db, match, [MatchStatus.SCHEDULED], **values)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Match {match_id} is live, report due by {match.report_deadline_at}")
        return match

    async def forfeit(self, db: AsyncSession, match_id: int, winner_participant_id: int,
                      admin_user_id: Optional[int] = None, reason: str = "forfeit") -> Match:
        """Admin or no-show decision; settles and advances like a completion."""
        outbox = EventOutbox()
        try:
            match = await load_match(db, match_id)
            self._require_transition(match, MatchStatus.FORFEITED)
            if not match.has_both_participants:
                raise PolicyError(f"Match {match_id} is still waiting for an opponent")
            if match.slot_of(winner_participant_id) is None:
                raise ValidationError(
                    f"Participant {winner_participant_id} is not in match {match_id}",
                    details={"match_id": match_id, "winner_id": winner_participant_id}
                )
            now = self.clock()
            await guarded_update(
                db, match, self.sources_for(MatchStatus.FORFEITED),
                status=MatchStatus.FORFEITED,
                winner_id=winner_participant_id,
                confirmed_by_user_id=admin_user_id,
                confirmed_at=now,
                resolution_reason=reason,
                settled_at=now,
            )
            await self.advancement.advance(db, match, outbox)
            outbox.add("match.forfeited", {
                "match_id": match.id,
                "tournament_id": match.tournament_id,
                "winner_id": winner_participant_id,
            })
            await self._finish(db, outbox)
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Match {match_id} forfeited, winner {winner_participant_id}")
        return match

    async def replay(self, db: AsyncSession, match_id: int) -> Match:
        """Send a no-contest match back to scheduled with a fresh deadline."""
        try:
            match = await load_match(db, match_id)
            self._require_transition(match, MatchStatus.SCHEDULED)
            await guarded_update(
                db, match, [MatchStatus.NO_CONTEST],
                status=MatchStatus.SCHEDULED,
                winner_id=None,
                participant1_score=None,
                participant2_score=None,
                reported_by_user_id=None,
                reported_at=None,
                auto_confirm_at=None,
                warning_sent_at=None,
                resolution_reason=None,
                report_deadline_at=self.clock() + self.settings.no_report_window,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Match {match_id} replayed")
        return match

    async def apply_resolution(self, db: AsyncSession, match: Match, winner_id: int,
                               admin_user_id: int, outbox: EventOutbox,
                               participant1_score: Optional[int] = None,
                               participant2_score: Optional[int] = None) -> Match:
        """
        DISPUTED → COMPLETED with the adjudicated winner, then advance.
        The only path that may change an already reported winner_id.
        Runs inside DisputeService's transaction.
        """
        self._require_transition(match, MatchStatus.COMPLETED)
        if match.slot_of(winner_id) is None:
            raise ValidationError(
                f"Participant {winner_id} is not in match {match.id}",
                details={"match_id": match.id, "winner_id": winner_id}
            )
        now = self.clock()
        values = dict(
            status=MatchStatus.COMPLETED,
            winner_id=winner_id,
            confirmed_by_user_id=admin_user_id,
            confirmed_at=now,
            auto_verified=False,
            resolution_reason="dispute_resolved",
            settled_at=now,
        )
        if participant1_score is not None and participant2_score is not None:
            values.update(participant1_score=participant1_score, participant2_score=participant2_score)
        await guarded_update(db, match, [MatchStatus.DISPUTED], **values)
        await self.advancement.advance(db, match, outbox)
        outbox.add("match.completed", {
            "match_id": match.id,
            "tournament_id": match.tournament_id,
            "winner_id": winner_id,
            "auto_verified": False,
            "via": "dispute",
        })
        return match
