"""Campaign configuration read by the draw engine.

These tables are owned by the campaign-authoring side. The engine only reads
them, except for ``Prize.remaining_stock`` and ``PrizeTimeSlot.consumed``,
which are mutated exclusively by the stock ledger's conditional updates.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Integer,
    String,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship, selectinload

from ..db.utils import ensure_utc
from ..types import (
    CampaignSnapshot,
    FraudPolicy,
    PrizeKind,
    PrizeSnapshot,
    SegmentSnapshot,
    SlotSnapshot,
)
from .base import ID_TYPE, Base, UTCDateTime


class Campaign(Base):
    """A gamified campaign and its global draw policy."""

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    """Human readable campaign name."""

    no_win_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    """Weight of the trailing losing interval of the probability partition."""

    cooldown_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Minimum delay between two participations of the same identity."""

    max_participations: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Maximum participations allowed per identity; ``None`` means unlimited."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    prizes: Mapped[list["Prize"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="Prize.position",
    )
    """Prizes in declaration (priority) order."""

    segments: Mapped[list["CampaignSegment"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="CampaignSegment.position",
    )

    __table_args__ = (
        CheckConstraint("no_win_weight >= 0", name="no_win_weight_non_negative"),
    )

    def __init__(
        self,
        *,
        name: str,
        no_win_weight: float = 0.0,
        cooldown_seconds: Optional[int] = None,
        max_participations: Optional[int] = None,
        prizes: Optional[list["Prize"]] = None,
        segments: Optional[list["CampaignSegment"]] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.name = name
        self.no_win_weight = no_win_weight
        self.cooldown_seconds = cooldown_seconds
        self.max_participations = max_participations
        if prizes is not None:
            self.prizes = prizes
        if segments is not None:
            self.segments = segments
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<Campaign(id={self.id}, name={self.name!r}, no_win_weight={self.no_win_weight})>"

    @classmethod
    def load_for_draw(cls, session: Session, campaign_id: int) -> Optional["Campaign"]:
        """Fetch a campaign with prizes, slots and segments eagerly loaded."""

        stmt = (
            select(cls)
            .where(cls.id == campaign_id)
            .options(
                selectinload(cls.prizes).selectinload(Prize.slots),
                selectinload(cls.segments),
            )
        )
        return session.scalar(stmt)

    def to_snapshot(self) -> CampaignSnapshot:
        """Return the immutable view consumed by the resolvers."""

        return CampaignSnapshot(
            id=self.id,
            prizes=tuple(prize.to_snapshot() for prize in self.prizes),
            no_win_weight=float(self.no_win_weight or 0.0),
            policy=FraudPolicy(
                cooldown=(
                    timedelta(seconds=self.cooldown_seconds)
                    if self.cooldown_seconds
                    else None
                ),
                max_participations=self.max_participations,
            ),
            segments=tuple(segment.to_snapshot() for segment in self.segments),
        )


class Prize(Base):
    """A prize with finite stock, won either in a calendar slot or by weighted draw."""

    __tablename__ = "prizes"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    """Owning campaign."""

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    """Declaration order inside the campaign; used as the priority tie-break."""

    label: Mapped[str] = mapped_column(String(255), nullable=False)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    """Either ``"calendar"`` or ``"probability"``."""

    total_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    """Number of units configured for the prize. Never mutated by the engine."""

    remaining_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    """Units still available; decremented only through the stock ledger."""

    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    """Relative weight of a probability prize."""

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    active_from: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    active_until: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )

    assigned_segments: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    """Ids of the wheel segments this prize is displayed on."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    campaign: Mapped["Campaign"] = relationship(back_populates="prizes")
    slots: Mapped[list["PrizeTimeSlot"]] = relationship(
        back_populates="prize",
        cascade="all, delete-orphan",
        order_by="PrizeTimeSlot.position",
    )

    __table_args__ = (
        CheckConstraint("kind IN ('calendar','probability')", name="prize_kind_enum"),
        CheckConstraint("total_stock >= 0", name="total_stock_non_negative"),
        CheckConstraint("remaining_stock >= 0", name="remaining_stock_non_negative"),
        CheckConstraint(
            "remaining_stock <= total_stock", name="remaining_stock_within_total"
        ),
    )

    def __init__(
        self,
        *,
        label: str,
        kind: str,
        total_stock: int,
        remaining_stock: Optional[int] = None,
        weight: Optional[float] = None,
        position: int = 0,
        is_active: bool = True,
        active_from: Optional[datetime] = None,
        active_until: Optional[datetime] = None,
        assigned_segments: Optional[list[int]] = None,
        campaign: Optional["Campaign"] = None,
        campaign_id: Optional[int] = None,
        slots: Optional[list["PrizeTimeSlot"]] = None,
    ) -> None:
        self.label = label
        self.kind = PrizeKind(kind).value
        self.total_stock = total_stock
        self.remaining_stock = total_stock if remaining_stock is None else remaining_stock
        self.weight = weight
        self.position = position
        self.is_active = is_active
        self.active_from = active_from
        self.active_until = active_until
        self.assigned_segments = list(assigned_segments) if assigned_segments else None
        if campaign is not None:
            self.campaign = campaign
        if campaign_id is not None:
            self.campaign_id = campaign_id
        if slots is not None:
            self.slots = slots

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Prize(id={self.id}, label={self.label!r}, kind={self.kind}, "
            f"remaining={self.remaining_stock}/{self.total_stock})>"
        )

    def to_snapshot(self) -> PrizeSnapshot:
        return PrizeSnapshot(
            id=self.id,
            campaign_id=self.campaign_id,
            position=self.position,
            label=self.label,
            kind=PrizeKind(self.kind),
            total_stock=self.total_stock,
            remaining_stock=self.remaining_stock,
            weight=self.weight,
            slots=tuple(slot.to_snapshot() for slot in self.slots),
            is_active=self.is_active,
            active_from=ensure_utc(self.active_from),
            active_until=ensure_utc(self.active_until),
            assigned_segments=tuple(self.assigned_segments or ()),
        )


class PrizeTimeSlot(Base):
    """A ``[start_at, end_at)`` window in which a calendar prize can be won once."""

    __tablename__ = "prize_time_slots"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    prize_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("prizes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )

    prize: Mapped["Prize"] = relationship(back_populates="slots")

    __table_args__ = (CheckConstraint("end_at > start_at", name="slot_end_after_start"),)

    def __init__(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        position: int = 0,
        consumed: bool = False,
        prize: Optional["Prize"] = None,
        prize_id: Optional[int] = None,
    ) -> None:
        self.start_at = start_at
        self.end_at = end_at
        self.position = position
        self.consumed = consumed
        if prize is not None:
            self.prize = prize
        if prize_id is not None:
            self.prize_id = prize_id

    def to_snapshot(self) -> SlotSnapshot:
        return SlotSnapshot(
            id=self.id,
            prize_id=self.prize_id,
            start=ensure_utc(self.start_at),
            end=ensure_utc(self.end_at),
            consumed=self.consumed,
            position=self.position,
        )


class CampaignSegment(Base):
    """One segment of a wheel (or card face) shown to the participant."""

    __tablename__ = "campaign_segments"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    is_winning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    campaign: Mapped["Campaign"] = relationship(back_populates="segments")

    def __init__(
        self,
        *,
        label: str,
        is_winning: bool = False,
        position: int = 0,
        campaign: Optional["Campaign"] = None,
        campaign_id: Optional[int] = None,
    ) -> None:
        self.label = label
        self.is_winning = is_winning
        self.position = position
        if campaign is not None:
            self.campaign = campaign
        if campaign_id is not None:
            self.campaign_id = campaign_id

    def to_snapshot(self) -> SegmentSnapshot:
        return SegmentSnapshot(
            id=self.id,
            label=self.label,
            is_winning=self.is_winning,
            position=self.position,
        )


__all__ = ["Campaign", "CampaignSegment", "Prize", "PrizeTimeSlot"]
