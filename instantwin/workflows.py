from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import EngineSettings
from .draw.antifraud import AntiFraudGate
from .draw.audit import AuditDispatcher, SqlAuditSink
from .draw.engine import DrawOrchestrator
from .draw.ledger import SqlStockLedger
from .draw.participations import SqlParticipationStore
from .draw.random_source import RandomSource, SystemRandomSource
from .draw.repository import SqlCampaignRepository
from .errors import ValidationError
from .models import Campaign, Prize
from .types import DrawContext, DrawOutcome

logger = logging.getLogger(__name__)


def build_draw_orchestrator(
    session_factory: sessionmaker[Session],
    settings: Optional[EngineSettings] = None,
    random_source: Optional[RandomSource] = None,
) -> DrawOrchestrator:
    """Wire a :class:`DrawOrchestrator` onto the SQLAlchemy collaborators.

    Parameters
    ----------
    session_factory : sessionmaker[Session]
        Factory from :func:`~instantwin.db.engine.get_sessionmaker`. Every
        collaborator opens its own short-lived sessions from it.
    settings : Optional[EngineSettings], default: None
        Engine tunables. When omitted, :meth:`EngineSettings.from_env` is used.
    random_source : Optional[RandomSource], default: None
        Uniform generator for the weighted draw and segment choice. Defaults
        to :class:`SystemRandomSource`; only tests should pass anything else.

    Returns
    -------
    DrawOrchestrator
        Ready to use. Call :meth:`DrawOrchestrator.close` (or use it as a
        context manager) to flush pending audit records.
    """

    settings = settings or EngineSettings.from_env()
    store = SqlParticipationStore(session_factory)
    return DrawOrchestrator(
        campaigns=SqlCampaignRepository(session_factory),
        gate=AntiFraudGate(
            store,
            poll_interval=settings.duplicate_poll_interval,
            lease_grace=settings.claim_lease_grace,
        ),
        ledger=SqlStockLedger(session_factory),
        random_source=random_source or SystemRandomSource(),
        audit=AuditDispatcher(
            SqlAuditSink(session_factory), asynchronous=settings.audit_async
        ),
        settings=settings,
    )


def run_instant_win_draw(
    orchestrator: DrawOrchestrator,
    *,
    participation_id: str,
    campaign_id: int,
    identity_fingerprint: str,
    trace_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> DrawOutcome:
    """Stamp the current server time on a participation and draw it.

    This function essentially wraps :meth:`DrawOrchestrator.draw`; see there
    for the exceptions it raises.
    """

    ctx = DrawContext.at_server_time(
        participation_id=participation_id,
        campaign_id=campaign_id,
        identity_fingerprint=identity_fingerprint,
        trace_id=trace_id,
    )
    return orchestrator.draw(ctx, timeout=timeout)


@dataclass(frozen=True)
class PrizeDistribution:
    """Stock consumption figures of one prize."""

    prize_id: int
    label: str
    kind: str
    total_stock: int
    remaining_stock: int
    distributed: int
    distribution_rate: float
    is_depleted: bool


def summarize_prize_distribution(session: Session, campaign_id: int) -> list[PrizeDistribution]:
    """Return the stock consumption of every prize of ``campaign_id``.

    Prizes are listed in declaration order. ``distribution_rate`` is the
    share of the total stock already awarded, in percent.

    Raises
    ------
    ValidationError
        If the campaign does not exist.
    """

    if session.get(Campaign, campaign_id) is None:
        raise ValidationError(f"Unknown campaign {campaign_id}")

    prizes = session.scalars(
        select(Prize)
        .where(Prize.campaign_id == campaign_id)
        .order_by(Prize.position, Prize.id)
    )
    summary: list[PrizeDistribution] = []
    for prize in prizes:
        snapshot = prize.to_snapshot()
        summary.append(
            PrizeDistribution(
                prize_id=snapshot.id,
                label=snapshot.label,
                kind=snapshot.kind.value,
                total_stock=snapshot.total_stock,
                remaining_stock=snapshot.remaining_stock,
                distributed=snapshot.distributed,
                distribution_rate=snapshot.distribution_rate,
                is_depleted=snapshot.is_depleted,
            )
        )
    return summary


__all__ = [
    "PrizeDistribution",
    "build_draw_orchestrator",
    "run_instant_win_draw",
    "summarize_prize_distribution",
]
