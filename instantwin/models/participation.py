"""Participation bookkeeping written by the anti-fraud gate."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..types import DrawOutcome
from .base import ID_TYPE, Base, UTCDateTime

STATUS_PENDING = "pending"
STATUS_DECIDED = "decided"


class Participation(Base):
    """One row per participation id; the idempotency record of a draw.

    The row is inserted as ``pending`` when the request claims the
    participation id, and flipped to ``decided`` exactly once, with the
    canonical JSON of the outcome, when the draw completes.
    """

    __tablename__ = "participations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Surrogate primary key."""

    participation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    """Idempotency key supplied by the caller."""

    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )

    identity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    """SHA-256 of the identity fingerprint; the raw fingerprint is never stored."""

    trace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_PENDING)
    """``"pending"`` while the draw runs, ``"decided"`` afterwards."""

    result: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    """``"win"`` or ``"loss"`` once decided."""

    prize_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("prizes.id", ondelete="SET NULL"), nullable=True
    )
    slot_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("prize_time_slots.id", ondelete="SET NULL"), nullable=True
    )

    outcome_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    """Canonical JSON of the :class:`~instantwin.types.DrawOutcome`."""

    claim_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    """Owner of the pending claim; only its holder may settle or release it."""

    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    """End of the pending claim's lease. An expired claim may be taken over."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("participation_id", name="uq_participations_participation_id"),
        CheckConstraint("status IN ('pending','decided')", name="participation_status_enum"),
        Index("ix_participations_campaign_result", "campaign_id", "result"),
    )

    def __init__(
        self,
        *,
        participation_id: str,
        campaign_id: int,
        identity_hash: str,
        trace_id: Optional[str] = None,
        status: str = STATUS_PENDING,
        created_at: Optional[datetime] = None,
        claim_token: Optional[str] = None,
        claim_expires_at: Optional[datetime] = None,
    ) -> None:
        self.participation_id = participation_id
        self.campaign_id = campaign_id
        self.identity_hash = identity_hash
        self.trace_id = trace_id
        self.status = status
        self.claim_token = claim_token
        self.claim_expires_at = claim_expires_at
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Participation(participation_id={self.participation_id!r}, "
            f"status={self.status}, result={self.result})>"
        )

    @property
    def is_decided(self) -> bool:
        return self.status == STATUS_DECIDED

    def outcome(self) -> Optional[DrawOutcome]:
        """Return the stored outcome, or ``None`` while the draw is pending."""

        if not self.is_decided or self.outcome_json is None:
            return None
        return DrawOutcome.from_json(self.outcome_json)

    @classmethod
    def get_by_participation_id(
        cls, session: Session, participation_id: str
    ) -> Optional["Participation"]:
        return session.scalar(select(cls).where(cls.participation_id == participation_id))


class IdentityParticipation(Base):
    """Counts participations per identity and campaign for the rate gate.

    ``(campaign_id, identity_hash, sequence_no)`` is unique, so two concurrent
    requests from one identity cannot both take the same sequence number.
    """

    __tablename__ = "identity_participations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    identity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    participation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "campaign_id",
            "identity_hash",
            "sequence_no",
            name="uq_identity_participation_sequence",
        ),
    )

    def __init__(
        self,
        *,
        campaign_id: int,
        identity_hash: str,
        sequence_no: int,
        participation_id: str,
        occurred_at: datetime,
    ) -> None:
        self.campaign_id = campaign_id
        self.identity_hash = identity_hash
        self.sequence_no = sequence_no
        self.participation_id = participation_id
        self.occurred_at = occurred_at

    @classmethod
    def latest(
        cls, session: Session, campaign_id: int, identity_hash: str
    ) -> Optional["IdentityParticipation"]:
        """Return the most recent participation recorded for the identity."""

        stmt = (
            select(cls)
            .where(cls.campaign_id == campaign_id, cls.identity_hash == identity_hash)
            .order_by(cls.sequence_no.desc())
            .limit(1)
        )
        return session.scalar(stmt)


class BlockedParticipation(Base):
    """Log of participations rejected by the anti-fraud gate."""

    __tablename__ = "blocked_participations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    identity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    participation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    block_reason: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __init__(
        self,
        *,
        campaign_id: int,
        identity_hash: str,
        participation_id: str,
        block_reason: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.campaign_id = campaign_id
        self.identity_hash = identity_hash
        self.participation_id = participation_id
        self.block_reason = block_reason
        if created_at is not None:
            self.created_at = created_at


__all__ = [
    "BlockedParticipation",
    "IdentityParticipation",
    "Participation",
    "STATUS_DECIDED",
    "STATUS_PENDING",
]
