from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from .base import ID_TYPE, Base, UTCDateTime


class StockReservation(Base):
    """One committed stock unit, written in the same transaction as the decrement.

    The number of rows for a prize always equals
    ``total_stock - remaining_stock``.
    """

    __tablename__ = "stock_reservations"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    prize_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("prizes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    slot_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("prize_time_slots.id", ondelete="SET NULL"), nullable=True
    )
    participation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("participation_id", name="uq_stock_reservation_participation"),
    )

    def __init__(
        self,
        *,
        prize_id: int,
        participation_id: str,
        slot_id: Optional[int] = None,
        reserved_at: Optional[datetime] = None,
    ) -> None:
        self.prize_id = prize_id
        self.participation_id = participation_id
        self.slot_id = slot_id
        if reserved_at is not None:
            self.reserved_at = reserved_at


class DrawAuditRecord(Base):
    """Append-only audit trail entry, one per participation id."""

    __tablename__ = "draw_audit_records"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    participation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[int] = mapped_column(ID_TYPE, nullable=False, index=True)
    trace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolver: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    result: Mapped[str] = mapped_column(String(10), nullable=False)
    prize_id: Mapped[Optional[int]] = mapped_column(ID_TYPE, nullable=True)
    slot_id: Mapped[Optional[int]] = mapped_column(ID_TYPE, nullable=True)
    details_json: Mapped[str] = mapped_column(Text, nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    """SHA-256 of ``details_json``; lets a reviewer detect edits to the record."""

    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("participation_id", name="uq_draw_audit_participation"),
    )

    def __init__(
        self,
        *,
        participation_id: str,
        campaign_id: int,
        result: str,
        details_json: str,
        digest: str,
        trace_id: Optional[str] = None,
        resolver: Optional[str] = None,
        prize_id: Optional[int] = None,
        slot_id: Optional[int] = None,
        recorded_at: Optional[datetime] = None,
    ) -> None:
        self.participation_id = participation_id
        self.campaign_id = campaign_id
        self.result = result
        self.details_json = details_json
        self.digest = digest
        self.trace_id = trace_id
        self.resolver = resolver
        self.prize_id = prize_id
        self.slot_id = slot_id
        if recorded_at is not None:
            self.recorded_at = recorded_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawAuditRecord(participation_id={self.participation_id!r}, "
            f"result={self.result}, resolver={self.resolver})>"
        )

    @classmethod
    def for_participation(
        cls, session: Session, participation_id: str
    ) -> list["DrawAuditRecord"]:
        stmt = select(cls).where(cls.participation_id == participation_id).order_by(cls.id)
        return list(session.scalars(stmt))


__all__ = ["DrawAuditRecord", "StockReservation"]
