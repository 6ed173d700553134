"""Atomic stock reservation against the database.

Every mutation of ``Prize.remaining_stock`` and ``PrizeTimeSlot.consumed``
goes through this module as a conditional ``UPDATE`` whose row count tells
whether the caller won the race. No in-process lock is involved: engine
instances running in different processes serialize on the database row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..errors import persistence_errors
from ..models import Participation, Prize, PrizeTimeSlot, StockReservation
from ..models.participation import STATUS_DECIDED
from ..types import ReservationResult

logger = logging.getLogger(__name__)


class StockLedger(Protocol):
    def try_reserve(
        self,
        prize_id: int,
        slot_id: Optional[int] = None,
        *,
        participation_id: str,
    ) -> ReservationResult:
        ...

    def release(self, participation_id: str, *, claim_token: Optional[str] = None) -> bool:
        ...


class SqlStockLedger:
    """:class:`StockLedger` backed by SQLAlchemy conditional updates.

    Each public method runs in its own short transaction. Concurrent callers
    racing for the last unit of a prize (or for one slot) observe exactly one
    :attr:`ReservationResult.COMMITTED`; every other caller gets
    :attr:`ReservationResult.EXHAUSTED`.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def conditional_decrement(
        self, prize_id: int, *, participation_id: Optional[str] = None
    ) -> bool:
        """Decrement ``prize_id`` if it still has stock. Returns ``True`` on success."""
        with persistence_errors("conditional_decrement"):
            with self._session_factory() as session:
                if not self._decrement(session, prize_id):
                    session.rollback()
                    return False
                if participation_id is not None:
                    session.add(
                        StockReservation(
                            prize_id=prize_id,
                            participation_id=participation_id,
                            reserved_at=self._clock(),
                        )
                    )
                session.commit()
                return True

    def conditional_consume_slot(
        self,
        slot_id: int,
        *,
        prize_id: Optional[int] = None,
        participation_id: Optional[str] = None,
    ) -> bool:
        """Consume ``slot_id`` and decrement its prize in one transaction.

        The slot flips ``consumed`` from false to true only if its prize also
        has a unit left; otherwise both updates are rolled back.
        """
        with persistence_errors("conditional_consume_slot"):
            with self._session_factory() as session:
                now = self._clock()
                stmt = (
                    update(PrizeTimeSlot)
                    .where(PrizeTimeSlot.id == slot_id, PrizeTimeSlot.consumed.is_(False))
                    .values(consumed=True, consumed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if prize_id is not None:
                    stmt = stmt.where(PrizeTimeSlot.prize_id == prize_id)
                if session.execute(stmt).rowcount != 1:
                    session.rollback()
                    return False

                owner_id = session.scalar(
                    select(PrizeTimeSlot.prize_id).where(PrizeTimeSlot.id == slot_id)
                )
                if owner_id is None or not self._decrement(session, owner_id):
                    session.rollback()
                    return False

                if participation_id is not None:
                    session.add(
                        StockReservation(
                            prize_id=owner_id,
                            slot_id=slot_id,
                            participation_id=participation_id,
                            reserved_at=now,
                        )
                    )
                session.commit()
                return True

    def try_reserve(
        self,
        prize_id: int,
        slot_id: Optional[int] = None,
        *,
        participation_id: str,
    ) -> ReservationResult:
        """Reserve one unit of ``prize_id`` (and ``slot_id`` for calendar prizes)."""
        if slot_id is None:
            committed = self.conditional_decrement(prize_id, participation_id=participation_id)
        else:
            committed = self.conditional_consume_slot(
                slot_id, prize_id=prize_id, participation_id=participation_id
            )
        result = ReservationResult.COMMITTED if committed else ReservationResult.EXHAUSTED
        logger.debug(
            f"Reservation prize={prize_id} slot={slot_id} "
            f"participation={participation_id}: {result.value}"
        )
        return result

    def release(self, participation_id: str, *, claim_token: Optional[str] = None) -> bool:
        """Give back the unit reserved for ``participation_id``.

        Used when a draw fails after its reservation committed, so that no
        unit stays decremented without a recorded win. A unit whose
        participation was already decided is never given back. With
        ``claim_token``, the participation must also still be pending under
        that claim. Returns ``False`` when nothing was released.
        """
        with persistence_errors("release_reservation"):
            with self._session_factory() as session:
                owner = session.execute(
                    select(Participation.status, Participation.claim_token)
                    .where(Participation.participation_id == participation_id)
                    .with_for_update()
                ).first()
                if owner is not None and owner.status == STATUS_DECIDED:
                    session.rollback()
                    logger.warning(
                        f"Kept reservation of participation {participation_id}: already decided"
                    )
                    return False
                if claim_token is not None and (owner is None or owner.claim_token != claim_token):
                    session.rollback()
                    return False

                reservation = session.scalar(
                    select(StockReservation).where(
                        StockReservation.participation_id == participation_id
                    )
                )
                if reservation is None:
                    return False
                session.execute(
                    update(Prize)
                    .where(
                        Prize.id == reservation.prize_id,
                        Prize.remaining_stock < Prize.total_stock,
                    )
                    .values(remaining_stock=Prize.remaining_stock + 1)
                    .execution_options(synchronize_session=False)
                )
                if reservation.slot_id is not None:
                    session.execute(
                        update(PrizeTimeSlot)
                        .where(PrizeTimeSlot.id == reservation.slot_id)
                        .values(consumed=False, consumed_at=None)
                        .execution_options(synchronize_session=False)
                    )
                session.execute(
                    delete(StockReservation).where(StockReservation.id == reservation.id)
                )
                session.commit()
        logger.warning(f"Released reservation of participation {participation_id}")
        return True

    @staticmethod
    def _decrement(session: Session, prize_id: int) -> bool:
        result = session.execute(
            update(Prize)
            .where(Prize.id == prize_id, Prize.remaining_stock > 0)
            .values(remaining_stock=Prize.remaining_stock - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


__all__ = ["SqlStockLedger", "StockLedger"]
