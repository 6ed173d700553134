"""Append-only audit trail of decided draws."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import PersistenceError, persistence_errors
from ..models import DrawAuditRecord
from ..types import AuditRecord

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> None:
        ...


class SqlAuditSink:
    """Write :class:`AuditRecord` rows into ``draw_audit_records``.

    A second append for the same participation id is ignored, so a record is
    never rewritten once stored.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def append(self, record: AuditRecord) -> None:
        outcome = record.outcome
        with persistence_errors("audit append"):
            with self._session_factory() as session:
                session.add(
                    DrawAuditRecord(
                        participation_id=record.participation_id,
                        campaign_id=record.campaign_id,
                        trace_id=record.trace_id,
                        resolver=record.resolver,
                        result=outcome.result.value,
                        prize_id=outcome.prize_id,
                        slot_id=outcome.slot_id,
                        details_json=record.to_json(),
                        digest=record.digest(),
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning(
                        f"Audit record for participation {record.participation_id} already exists"
                    )


class AuditDispatcher:
    """Hand audit records to a sink, inline or on a single background worker.

    Failures are logged and never propagate to the draw that produced the
    record. :meth:`close` waits for queued records.
    """

    def __init__(self, sink: AuditSink, *, asynchronous: bool = True) -> None:
        self._sink = sink
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="draw-audit")
            if asynchronous
            else None
        )

    def dispatch(self, record: AuditRecord) -> Optional[Future]:
        if self._executor is None:
            self._append(record)
            return None
        return self._executor.submit(self._append, record)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _append(self, record: AuditRecord) -> None:
        try:
            self._sink.append(record)
        except PersistenceError as exc:
            logger.warning(
                f"Audit append failed for participation {record.participation_id}: {exc}"
            )
        except Exception:
            logger.exception(
                f"Unexpected audit failure for participation {record.participation_id}"
            )


__all__ = ["AuditDispatcher", "AuditSink", "SqlAuditSink"]
