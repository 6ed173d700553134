"""Per-request draw state machine tying the resolvers, the gate and the ledger together."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..config import EngineSettings
from ..errors import DrawError, PersistenceError, RateLimited, ValidationError
from ..types import (
    AuditRecord,
    CampaignSnapshot,
    DrawContext,
    DrawOutcome,
    DrawResult,
    DrawState,
    PrizeKind,
    PrizeSnapshot,
    ReservationAttempt,
    ReservationResult,
    RngDraw,
)
from .antifraud import AntiFraudGate
from .audit import AuditDispatcher
from .deadline import Deadline
from .ledger import StockLedger
from .random_source import RandomSource
from .repository import CampaignReader
from .segments import SegmentPicker
from .slots import SlotResolver
from .weighted import WeightedDrawResolver

logger = logging.getLogger(__name__)

_TERMINAL_STATES = frozenset({DrawState.DONE, DrawState.REJECTED, DrawState.FAILED})


@dataclass
class _DrawRun:
    """Mutable bookkeeping for one call of :meth:`DrawOrchestrator.draw`."""

    ctx: DrawContext
    deadline: Deadline
    campaign: Optional[CampaignSnapshot] = None
    state_path: list[DrawState] = field(default_factory=list)
    claimed: bool = False
    claim_token: Optional[str] = None
    settled: bool = False
    cached: Optional[DrawOutcome] = None

    calendar_attempts: int = 0
    calendar_candidates: list[tuple[int, int]] = field(default_factory=list)
    excluded_slots: set[int] = field(default_factory=set)

    probability_retries: int = 0
    probability_rounds: list[dict[str, Any]] = field(default_factory=list)
    excluded_prizes: set[int] = field(default_factory=set)

    reservations: list[ReservationAttempt] = field(default_factory=list)
    rng_trace: list[RngDraw] = field(default_factory=list)

    prize: Optional[PrizeSnapshot] = None
    slot_id: Optional[int] = None
    resolver: Optional[str] = None
    outcome: Optional[DrawOutcome] = None

    @property
    def reserved(self) -> bool:
        return self.prize is not None

    def audit_record(self) -> AuditRecord:
        assert self.outcome is not None
        return AuditRecord(
            participation_id=self.ctx.participation_id,
            campaign_id=self.ctx.campaign_id,
            trace_id=self.ctx.trace_id,
            state_path=tuple(state.value for state in self.state_path),
            resolver=self.resolver,
            calendar_candidates=tuple(self.calendar_candidates),
            probability_rounds=tuple(self.probability_rounds),
            reservations=tuple(self.reservations),
            outcome=self.outcome,
        )


class DrawOrchestrator:
    """Decide instant-win participations: calendar slots first, then weighted draw, else loss.

    Each call to :meth:`draw` walks the state machine
    ``init -> anti_fraud -> calendar_attempt -> probability_attempt -> reserved
    -> audited -> done``, ending in ``rejected`` or ``failed`` on error.
    The orchestrator holds no stock or participation state of its own; every
    decision that must survive concurrent instances goes through the
    :class:`~instantwin.draw.antifraud.AntiFraudGate` and the
    :class:`~instantwin.draw.ledger.StockLedger`.

    Parameters
    ----------
    campaigns : CampaignReader
        Source of validated campaign snapshots.
    gate : AntiFraudGate
        Idempotency claim and per-identity rate limits.
    ledger : StockLedger
        Atomic stock reservation primitive.
    random_source : RandomSource
        Cryptographically strong uniform generator.
    audit : AuditDispatcher
        Destination of the per-draw audit record.
    settings : Optional[EngineSettings], default: None
        Retry bounds and the default persistence deadline.
    """

    def __init__(
        self,
        *,
        campaigns: CampaignReader,
        gate: AntiFraudGate,
        ledger: StockLedger,
        random_source: RandomSource,
        audit: AuditDispatcher,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._campaigns = campaigns
        self._gate = gate
        self._ledger = ledger
        self._audit = audit
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._slots = SlotResolver()
        self._weighted = WeightedDrawResolver(random_source)
        self._segments = SegmentPicker(random_source)
        self._handlers: dict[DrawState, Callable[[_DrawRun], DrawState]] = {
            DrawState.INIT: self._on_init,
            DrawState.ANTI_FRAUD: self._on_anti_fraud,
            DrawState.CALENDAR_ATTEMPT: self._on_calendar_attempt,
            DrawState.PROBABILITY_ATTEMPT: self._on_probability_attempt,
            DrawState.RESERVED: self._on_reserved,
            DrawState.AUDITED: self._on_audited,
        }

    def __enter__(self) -> "DrawOrchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Wait for queued audit records to be written."""
        self._audit.close()

    def draw(self, ctx: DrawContext, *, timeout: Optional[float] = None) -> DrawOutcome:
        """Decide the participation described by ``ctx``.

        Parameters
        ----------
        ctx : DrawContext
            Participation event stamped with the server time.
        timeout : Optional[float], default: None
            Deadline in seconds for all persistence calls of this draw;
            ``settings.persistence_timeout`` when omitted.

        Returns
        -------
        DrawOutcome
            The outcome decided now, or the one stored for an earlier
            request with the same participation id.

        Raises
        ------
        ValidationError
            If ``ctx`` or the campaign configuration is malformed.
        RateLimited
            If the anti-fraud gate rejects the participation.
        PersistenceError
            On a storage fault or an expired deadline. Retryable; nothing
            is recorded for the participation id.
        RngUnavailable
            If the random source cannot produce a trustworthy value.
        """
        ctx.validate()
        seconds = self._settings.persistence_timeout if timeout is None else timeout
        if seconds <= 0:
            raise ValidationError("timeout must be positive")

        run = _DrawRun(ctx=ctx, deadline=Deadline(seconds))
        state = DrawState.INIT
        try:
            while state not in _TERMINAL_STATES:
                run.state_path.append(state)
                state = self._handlers[state](run)
        except RateLimited:
            run.state_path.append(DrawState.REJECTED)
            raise
        except DrawError as exc:
            run.state_path.append(DrawState.FAILED)
            if isinstance(exc, PersistenceError):
                logger.error(f"Draw {ctx.participation_id} failed: {exc}")
            self._abandon(run)
            raise
        except Exception:
            run.state_path.append(DrawState.FAILED)
            logger.exception(f"Unexpected failure while drawing {ctx.participation_id}")
            self._abandon(run)
            raise

        run.state_path.append(state)
        if state is DrawState.REJECTED:
            assert run.cached is not None
            logger.debug(f"Participation {ctx.participation_id} already decided")
            return run.cached
        assert run.outcome is not None
        return run.outcome

    def _on_init(self, run: _DrawRun) -> DrawState:
        with run.deadline.bound("campaign load"):
            run.campaign = self._campaigns.load_campaign(run.ctx.campaign_id)
        return DrawState.ANTI_FRAUD

    def _on_anti_fraud(self, run: _DrawRun) -> DrawState:
        assert run.campaign is not None
        admission = self._gate.admit(run.ctx, run.campaign.policy, run.deadline)
        if not admission.admitted:
            run.cached = admission.outcome
            return DrawState.REJECTED
        run.claimed = True
        run.claim_token = admission.claim_token
        if admission.resumed:
            # The previous holder may have reserved a unit before it died.
            with run.deadline.bound("stale reservation release"):
                self._ledger.release(run.ctx.participation_id, claim_token=run.claim_token)
        return DrawState.CALENDAR_ATTEMPT

    def _on_calendar_attempt(self, run: _DrawRun) -> DrawState:
        assert run.campaign is not None
        if run.calendar_attempts >= self._settings.calendar_attempt_limit:
            logger.debug(
                f"Calendar attempt limit reached for {run.ctx.participation_id}"
            )
            return DrawState.PROBABILITY_ATTEMPT

        candidate = self._slots.resolve(
            run.campaign, run.ctx.server_timestamp, exclude_slots=run.excluded_slots
        )
        if candidate is None:
            return DrawState.PROBABILITY_ATTEMPT

        run.calendar_candidates.append(candidate.key)
        with run.deadline.bound("calendar reservation"):
            result = self._ledger.try_reserve(
                candidate.prize.id, candidate.slot.id, participation_id=run.ctx.participation_id
            )
        run.calendar_attempts += 1
        run.reservations.append(
            ReservationAttempt(
                stage=PrizeKind.CALENDAR.value,
                prize_id=candidate.prize.id,
                slot_id=candidate.slot.id,
                result=result,
            )
        )
        if result is ReservationResult.COMMITTED:
            run.prize = candidate.prize
            run.slot_id = candidate.slot.id
            run.resolver = PrizeKind.CALENDAR.value
            return DrawState.RESERVED

        run.excluded_slots.add(candidate.slot.id)
        return DrawState.CALENDAR_ATTEMPT

    def _on_probability_attempt(self, run: _DrawRun) -> DrawState:
        assert run.campaign is not None
        weighted = self._weighted.resolve(
            run.campaign, run.ctx.server_timestamp, exclude_prizes=run.excluded_prizes
        )
        run.probability_rounds.append(weighted.to_payload())
        if weighted.rng is not None:
            run.rng_trace.append(weighted.rng)
        if weighted.prize is None:
            return DrawState.AUDITED

        prize = weighted.prize
        with run.deadline.bound("probability reservation"):
            result = self._ledger.try_reserve(prize.id, participation_id=run.ctx.participation_id)
        run.reservations.append(
            ReservationAttempt(
                stage=PrizeKind.PROBABILITY.value,
                prize_id=prize.id,
                slot_id=None,
                result=result,
            )
        )
        if result is ReservationResult.COMMITTED:
            run.prize = prize
            run.resolver = PrizeKind.PROBABILITY.value
            return DrawState.RESERVED

        run.excluded_prizes.add(prize.id)
        if run.probability_retries >= self._settings.probability_retry_budget:
            logger.debug(
                f"Probability retry budget spent for {run.ctx.participation_id}; loss"
            )
            return DrawState.AUDITED
        run.probability_retries += 1
        return DrawState.PROBABILITY_ATTEMPT

    def _on_reserved(self, run: _DrawRun) -> DrawState:
        assert run.prize is not None
        logger.debug(
            f"Reserved prize {run.prize.id} (slot {run.slot_id}) "
            f"for {run.ctx.participation_id}"
        )
        return DrawState.AUDITED

    def _on_audited(self, run: _DrawRun) -> DrawState:
        assert run.campaign is not None
        choice = self._segments.pick(run.campaign, run.prize)
        if choice.rng is not None:
            run.rng_trace.append(choice.rng)

        run.outcome = DrawOutcome(
            participation_id=run.ctx.participation_id,
            campaign_id=run.ctx.campaign_id,
            result=DrawResult.WIN if run.reserved else DrawResult.LOSS,
            decided_at=self._clock(),
            prize_id=run.prize.id if run.prize is not None else None,
            slot_id=run.slot_id,
            segment_id=choice.segment.id if choice.segment is not None else None,
            resolver=run.resolver,
            rng_trace=tuple(run.rng_trace),
        )
        with run.deadline.bound("outcome commit"):
            self._gate.settle(run.outcome, run.claim_token)
        run.settled = True

        self._audit.dispatch(run.audit_record())
        logger.info(
            f"Participation {run.ctx.participation_id}: {run.outcome.result.value} "
            f"prize={run.outcome.prize_id} resolver={run.resolver}"
        )
        return DrawState.DONE

    def _abandon(self, run: _DrawRun) -> None:
        """Undo the side effects of a draw that will not return an outcome."""
        if run.settled or not run.claimed:
            return
        # A reservation whose commit raised may still have landed, so always ask.
        # The ledger keeps the unit if the outcome was stored after all.
        try:
            self._ledger.release(run.ctx.participation_id, claim_token=run.claim_token)
        except PersistenceError as exc:
            logger.error(
                f"Could not release stock reserved by {run.ctx.participation_id}: {exc}"
            )
        self._gate.release(run.ctx, run.claim_token)


__all__ = ["DrawOrchestrator"]
