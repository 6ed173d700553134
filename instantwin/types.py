"""Value objects shared by the draw resolvers, the ledger and the orchestrator.

The resolvers only ever see these frozen snapshots. Stock figures inside a
snapshot may be stale by the time a reservation is attempted; the stock
ledger's conditional update is the only authority on availability.
"""

from __future__ import annotations

import hashlib
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Mapping, Optional

from .db.utils import dt_iso
from .errors import ValidationError

MAX_PARTICIPATION_ID_LENGTH = 64
MAX_TRACE_ID_LENGTH = 64


class PrizeKind(str, Enum):
    CALENDAR = "calendar"
    PROBABILITY = "probability"


class DrawResult(str, Enum):
    WIN = "win"
    LOSS = "loss"


class ReservationResult(str, Enum):
    COMMITTED = "committed"
    EXHAUSTED = "exhausted"


class DrawState(str, Enum):
    """States of the per-request draw state machine."""

    INIT = "init"
    ANTI_FRAUD = "anti_fraud"
    CALENDAR_ATTEMPT = "calendar_attempt"
    PROBABILITY_ATTEMPT = "probability_attempt"
    RESERVED = "reserved"
    AUDITED = "audited"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


def _require_aware(value: Optional[datetime], label: str) -> None:
    if value is not None and (value.tzinfo is None or value.utcoffset() is None):
        raise ValidationError(f"{label} must be timezone-aware")


@dataclass(frozen=True)
class SlotSnapshot:
    """A calendar time slot ``[start, end)`` attached to a calendar prize."""

    id: int
    prize_id: int
    start: datetime
    end: datetime
    consumed: bool = False
    position: int = 0

    def is_open_at(self, now: datetime) -> bool:
        return self.start <= now < self.end


@dataclass(frozen=True)
class PrizeSnapshot:
    """Read-only view of a prize as configured for a campaign.

    Attributes
    ----------
    position : int
        Declaration order inside the campaign; lower wins ties.
    weight : Optional[float]
        Relative weight of a probability prize; ``None`` for calendar prizes.
    slots : tuple[SlotSnapshot, ...]
        Time slots of a calendar prize in declaration order.
    assigned_segments : tuple[int, ...]
        Wheel segments the prize is displayed on.
    """

    id: int
    campaign_id: int
    position: int
    label: str
    kind: PrizeKind
    total_stock: int
    remaining_stock: int
    weight: Optional[float] = None
    slots: tuple[SlotSnapshot, ...] = ()
    is_active: bool = True
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    assigned_segments: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        # Accept the stored string form; an unknown kind raises ValueError.
        object.__setattr__(self, "kind", PrizeKind(self.kind))

    @property
    def has_stock(self) -> bool:
        return self.remaining_stock > 0

    @property
    def is_depleted(self) -> bool:
        return self.remaining_stock <= 0

    @property
    def distributed(self) -> int:
        return self.total_stock - self.remaining_stock

    @property
    def distribution_rate(self) -> float:
        """Percentage of the total stock already awarded."""
        if self.total_stock == 0:
            return 0.0
        return self.distributed / self.total_stock * 100

    def is_available_at(self, now: datetime) -> bool:
        """Return whether the prize is switched on and inside its activity window."""
        if not self.is_active:
            return False
        if self.active_from is not None and now < self.active_from:
            return False
        if self.active_until is not None and now >= self.active_until:
            return False
        return True


@dataclass(frozen=True)
class SegmentSnapshot:
    id: int
    label: str
    is_winning: bool = False
    position: int = 0


@dataclass(frozen=True)
class FraudPolicy:
    """Per-campaign participation limits applied to one identity fingerprint."""

    cooldown: Optional[timedelta] = None
    max_participations: Optional[int] = None


@dataclass(frozen=True)
class CampaignSnapshot:
    """Read-only snapshot of a campaign and its prizes in declaration order."""

    id: int
    prizes: tuple[PrizeSnapshot, ...]
    no_win_weight: float = 0.0
    policy: FraudPolicy = field(default_factory=FraudPolicy)
    segments: tuple[SegmentSnapshot, ...] = ()

    def prize(self, prize_id: int) -> PrizeSnapshot:
        for prize in self.prizes:
            if prize.id == prize_id:
                return prize
        raise KeyError(f"Prize {prize_id} is not part of campaign {self.id}")

    def prizes_of_kind(self, kind: PrizeKind) -> list[PrizeSnapshot]:
        return [prize for prize in self.prizes if prize.kind is kind]

    def validate(self) -> None:
        """Raise :class:`ValidationError` when the configuration cannot be drawn from."""
        if not math.isfinite(self.no_win_weight) or self.no_win_weight < 0:
            raise ValidationError(
                f"Campaign {self.id}: no_win_weight must be a finite value >= 0"
            )
        if self.policy.max_participations is not None and self.policy.max_participations < 1:
            raise ValidationError(
                f"Campaign {self.id}: max_participations must be >= 1 when set"
            )
        if self.policy.cooldown is not None and self.policy.cooldown < timedelta(0):
            raise ValidationError(f"Campaign {self.id}: cooldown must not be negative")

        seen: set[int] = set()
        for prize in self.prizes:
            if prize.id in seen:
                raise ValidationError(f"Campaign {self.id}: duplicate prize id {prize.id}")
            seen.add(prize.id)
            if prize.total_stock < 0 or not 0 <= prize.remaining_stock <= prize.total_stock:
                raise ValidationError(
                    f"Prize {prize.id}: stock must satisfy 0 <= remaining <= total"
                )
            _require_aware(prize.active_from, f"Prize {prize.id} active_from")
            _require_aware(prize.active_until, f"Prize {prize.id} active_until")
            if prize.kind is PrizeKind.PROBABILITY:
                if prize.weight is None or not math.isfinite(prize.weight) or prize.weight <= 0:
                    raise ValidationError(
                        f"Prize {prize.id}: probability prizes need a positive weight"
                    )
            for slot in prize.slots:
                _require_aware(slot.start, f"Slot {slot.id} start")
                _require_aware(slot.end, f"Slot {slot.id} end")
                if slot.end <= slot.start:
                    raise ValidationError(f"Slot {slot.id}: end must be after start")


@dataclass(frozen=True)
class DrawContext:
    """One participation event submitted to the engine.

    ``server_timestamp`` is stamped by the server that received the request;
    client clocks are never trusted for slot eligibility or cooldowns.
    """

    participation_id: str
    campaign_id: int
    server_timestamp: datetime
    identity_fingerprint: str
    trace_id: Optional[str] = None

    @classmethod
    def at_server_time(
        cls,
        *,
        participation_id: str,
        campaign_id: int,
        identity_fingerprint: str,
        trace_id: Optional[str] = None,
    ) -> "DrawContext":
        return cls(
            participation_id=participation_id,
            campaign_id=campaign_id,
            server_timestamp=datetime.now(timezone.utc),
            identity_fingerprint=identity_fingerprint,
            trace_id=trace_id or uuid.uuid4().hex,
        )

    def validate(self) -> None:
        if not isinstance(self.participation_id, str) or not self.participation_id.strip():
            raise ValidationError("participation_id must be a non-empty string")
        if len(self.participation_id) > MAX_PARTICIPATION_ID_LENGTH:
            raise ValidationError(
                f"participation_id must be at most {MAX_PARTICIPATION_ID_LENGTH} characters"
            )
        if self.trace_id is not None and (
            not isinstance(self.trace_id, str) or len(self.trace_id) > MAX_TRACE_ID_LENGTH
        ):
            raise ValidationError(
                f"trace_id must be a string of at most {MAX_TRACE_ID_LENGTH} characters"
            )
        if not isinstance(self.identity_fingerprint, str) or not self.identity_fingerprint.strip():
            raise ValidationError("identity_fingerprint must be a non-empty string")
        if not isinstance(self.server_timestamp, datetime):
            raise ValidationError("server_timestamp must be a datetime")
        _require_aware(self.server_timestamp, "server_timestamp")


@dataclass(frozen=True)
class RngDraw:
    """One value taken from the random source, kept for audit replay."""

    purpose: str
    low: float
    high: float
    value: float

    def __post_init__(self) -> None:
        # Keep the JSON form stable whether callers pass ints or floats.
        for name in ("low", "high", "value"):
            object.__setattr__(self, name, float(getattr(self, name)))

    def to_payload(self) -> dict[str, Any]:
        return {
            "purpose": self.purpose,
            "low": self.low,
            "high": self.high,
            "value": self.value,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RngDraw":
        return cls(
            purpose=payload["purpose"],
            low=payload["low"],
            high=payload["high"],
            value=payload["value"],
        )


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), allow_nan=False)


@dataclass(frozen=True)
class DrawOutcome:
    """Final decision for one participation id.

    Attributes
    ----------
    resolver : Optional[str]
        ``"calendar"`` or ``"probability"`` for a win, ``None`` for a loss.
    segment_id : Optional[int]
        Wheel segment chosen for display; never influences the decision.
    rng_trace : tuple[RngDraw, ...]
        Every random value consumed while deciding, in order.
    """

    participation_id: str
    campaign_id: int
    result: DrawResult
    decided_at: datetime
    prize_id: Optional[int] = None
    slot_id: Optional[int] = None
    segment_id: Optional[int] = None
    resolver: Optional[str] = None
    rng_trace: tuple[RngDraw, ...] = ()

    @property
    def is_win(self) -> bool:
        return self.result is DrawResult.WIN

    def to_payload(self) -> dict[str, Any]:
        return {
            "participation_id": self.participation_id,
            "campaign_id": self.campaign_id,
            "result": self.result.value,
            "decided_at": dt_iso(self.decided_at),
            "prize_id": self.prize_id,
            "slot_id": self.slot_id,
            "segment_id": self.segment_id,
            "resolver": self.resolver,
            "rng_trace": [draw.to_payload() for draw in self.rng_trace],
        }

    def to_json(self) -> str:
        return canonical_json(self.to_payload())

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DrawOutcome":
        return cls(
            participation_id=payload["participation_id"],
            campaign_id=payload["campaign_id"],
            result=DrawResult(payload["result"]),
            decided_at=datetime.fromisoformat(payload["decided_at"]),
            prize_id=payload.get("prize_id"),
            slot_id=payload.get("slot_id"),
            segment_id=payload.get("segment_id"),
            resolver=payload.get("resolver"),
            rng_trace=tuple(RngDraw.from_payload(item) for item in payload.get("rng_trace", ())),
        )

    @classmethod
    def from_json(cls, raw: str) -> "DrawOutcome":
        return cls.from_payload(json.loads(raw))


@dataclass(frozen=True)
class ReservationAttempt:
    stage: str
    prize_id: int
    slot_id: Optional[int]
    result: ReservationResult

    def to_payload(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "prize_id": self.prize_id,
            "slot_id": self.slot_id,
            "result": self.result.value,
        }


@dataclass(frozen=True)
class AuditRecord:
    """Immutable account of how one participation was decided.

    Attributes
    ----------
    state_path : tuple[str, ...]
        Every state the draw state machine went through, in order.
    calendar_candidates : tuple[tuple[int, int], ...]
        ``(prize_id, slot_id)`` pairs proposed by the slot resolver.
    probability_rounds : tuple[dict, ...]
        One entry per weighted draw: the partition used and the value drawn.
    reservations : tuple[ReservationAttempt, ...]
        Every reservation attempted against the stock ledger.
    """

    participation_id: str
    campaign_id: int
    trace_id: Optional[str]
    state_path: tuple[str, ...]
    resolver: Optional[str]
    calendar_candidates: tuple[tuple[int, int], ...]
    probability_rounds: tuple[Mapping[str, Any], ...]
    reservations: tuple[ReservationAttempt, ...]
    outcome: DrawOutcome

    def to_payload(self) -> dict[str, Any]:
        return {
            "participation_id": self.participation_id,
            "campaign_id": self.campaign_id,
            "trace_id": self.trace_id,
            "state_path": list(self.state_path),
            "resolver": self.resolver,
            "calendar_candidates": [list(pair) for pair in self.calendar_candidates],
            "probability_rounds": [dict(item) for item in self.probability_rounds],
            "reservations": [attempt.to_payload() for attempt in self.reservations],
            "outcome": self.outcome.to_payload(),
        }

    def to_json(self) -> str:
        return canonical_json(self.to_payload())

    def digest(self) -> str:
        """SHA-256 of the canonical JSON form, stored next to the record."""
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()


def calendar_slot(
    day: date,
    at: str,
    *,
    window_minutes: int = 5,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime]:
    """Return the half-open slot ``[at - window, at + window)`` for a scheduled instant win.

    Parameters
    ----------
    day : date
        Calendar day of the scheduled win.
    at : str
        Local time of day in ``HH:MM`` format.
    window_minutes : int, default: 5
        Tolerance on either side of the scheduled time.
    tz : tzinfo, default: UTC
        Time zone ``at`` is expressed in.
    """
    if window_minutes <= 0:
        raise ValidationError("window_minutes must be positive")
    try:
        hours_text, minutes_text = at.split(":")
        scheduled_time = time(int(hours_text), int(minutes_text))
    except ValueError as exc:
        raise ValidationError(f"Invalid calendar time {at!r}; expected HH:MM") from exc
    scheduled = datetime.combine(day, scheduled_time, tzinfo=tz)
    window = timedelta(minutes=window_minutes)
    return scheduled - window, scheduled + window


__all__ = [
    "AuditRecord",
    "CampaignSnapshot",
    "DrawContext",
    "DrawOutcome",
    "DrawResult",
    "DrawState",
    "FraudPolicy",
    "PrizeKind",
    "PrizeSnapshot",
    "RngDraw",
    "ReservationAttempt",
    "ReservationResult",
    "SegmentSnapshot",
    "SlotSnapshot",
    "calendar_slot",
    "canonical_json",
]
