"""Idempotency and per-identity participation records."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..db.utils import ensure_utc
from ..errors import PersistenceError, persistence_errors
from ..models import BlockedParticipation, IdentityParticipation, Participation
from ..models.participation import STATUS_DECIDED, STATUS_PENDING
from ..types import DrawContext, DrawOutcome, FraudPolicy

logger = logging.getLogger(__name__)

REASON_COOLDOWN = "cooldown"
REASON_MAX_PARTICIPATIONS = "max_participations"
REASON_CONCURRENT = "concurrent_participation"


@dataclass(frozen=True)
class ParticipationRecord:
    participation_id: str
    campaign_id: int
    outcome: Optional[DrawOutcome]
    lease_expired: bool = False
    """Whether a pending claim outlived its lease when it was read."""

    @property
    def is_pending(self) -> bool:
        return self.outcome is None


@dataclass(frozen=True)
class ClaimResult:
    """Result of :meth:`SqlParticipationStore.insert_if_absent`.

    ``token`` identifies the claim when it was inserted. Otherwise
    ``existing`` is the row that won the insert race, or ``None`` if it was
    released before it could be read.
    """

    inserted: bool
    token: Optional[str] = None
    existing: Optional[ParticipationRecord] = None


class SqlParticipationStore:
    """Insert-if-absent primitives keyed by unique constraints.

    A pending claim carries a random token and a lease. Only the token holder
    may settle or release it; once the lease ends another request may take
    the claim over with :meth:`take_over`.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def lookup(self, participation_id: str) -> Optional[ParticipationRecord]:
        with persistence_errors("participation lookup"):
            with self._session_factory() as session:
                row = Participation.get_by_participation_id(session, participation_id)
                if row is None:
                    return None
                outcome = row.outcome()
                expires_at = row.claim_expires_at
                return ParticipationRecord(
                    participation_id=row.participation_id,
                    campaign_id=row.campaign_id,
                    outcome=outcome,
                    lease_expired=(
                        outcome is None
                        and expires_at is not None
                        and self._clock() >= expires_at
                    ),
                )

    def insert_if_absent(
        self, ctx: DrawContext, identity_hash: str, *, lease: float
    ) -> ClaimResult:
        """Claim ``ctx.participation_id`` with a pending row held for ``lease`` seconds."""
        token = uuid.uuid4().hex
        with persistence_errors("participation claim"):
            with self._session_factory() as session:
                session.add(
                    Participation(
                        participation_id=ctx.participation_id,
                        campaign_id=ctx.campaign_id,
                        identity_hash=identity_hash,
                        trace_id=ctx.trace_id,
                        created_at=ctx.server_timestamp,
                        claim_token=token,
                        claim_expires_at=self._clock() + timedelta(seconds=lease),
                    )
                )
                try:
                    session.commit()
                    return ClaimResult(inserted=True, token=token)
                except IntegrityError:
                    session.rollback()
                    logger.debug(f"Participation {ctx.participation_id} already claimed")
        return ClaimResult(inserted=False, existing=self.lookup(ctx.participation_id))

    def take_over(self, ctx: DrawContext, identity_hash: str, *, lease: float) -> Optional[str]:
        """Re-claim a pending participation whose lease has ended.

        The identity participation counted by the previous holder is dropped
        in the same transaction. Returns the new claim token, or ``None`` when
        the claim was decided, renewed or taken over by someone else first.
        """
        token = uuid.uuid4().hex
        now = self._clock()
        with persistence_errors("claim takeover"):
            with self._session_factory() as session:
                result = session.execute(
                    update(Participation)
                    .where(
                        Participation.participation_id == ctx.participation_id,
                        Participation.status == STATUS_PENDING,
                        Participation.claim_expires_at <= now,
                    )
                    .values(
                        identity_hash=identity_hash,
                        trace_id=ctx.trace_id,
                        created_at=ctx.server_timestamp,
                        claim_token=token,
                        claim_expires_at=now + timedelta(seconds=lease),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None
                session.execute(
                    delete(IdentityParticipation).where(
                        IdentityParticipation.participation_id == ctx.participation_id
                    )
                )
                session.commit()
        return token

    def record_outcome(self, outcome: DrawOutcome, claim_token: str) -> None:
        """Flip the pending claim to decided, storing the canonical outcome JSON."""
        with persistence_errors("record outcome"):
            with self._session_factory() as session:
                result = session.execute(
                    update(Participation)
                    .where(
                        Participation.participation_id == outcome.participation_id,
                        Participation.status == STATUS_PENDING,
                        Participation.claim_token == claim_token,
                    )
                    .values(
                        status=STATUS_DECIDED,
                        result=outcome.result.value,
                        prize_id=outcome.prize_id,
                        slot_id=outcome.slot_id,
                        outcome_json=outcome.to_json(),
                        decided_at=outcome.decided_at,
                        claim_expires_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise PersistenceError(
                        f"Pending claim for participation {outcome.participation_id} was lost"
                    )
                session.commit()

    def release(self, participation_id: str, claim_token: str) -> bool:
        """Drop a pending claim and the identity participation it counted.

        Nothing is touched unless the claim is still pending under
        ``claim_token``. Returns whether the claim was dropped.
        """
        with persistence_errors("participation release"):
            with self._session_factory() as session:
                result = session.execute(
                    delete(Participation).where(
                        Participation.participation_id == participation_id,
                        Participation.status == STATUS_PENDING,
                        Participation.claim_token == claim_token,
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.execute(
                    delete(IdentityParticipation).where(
                        IdentityParticipation.participation_id == participation_id
                    )
                )
                session.commit()
                return True

    def record_identity_participation(
        self,
        ctx: DrawContext,
        identity_hash: str,
        policy: FraudPolicy,
    ) -> Optional[str]:
        """Count one participation for the identity unless the policy forbids it.

        Returns ``None`` when admitted, otherwise the rejection reason. The
        insert of the next sequence number is the atomic step: of two
        concurrent requests from one identity only one can take it.
        """
        now = ensure_utc(ctx.server_timestamp)
        with persistence_errors("identity participation"):
            with self._session_factory() as session:
                latest = IdentityParticipation.latest(session, ctx.campaign_id, identity_hash)
                count = latest.sequence_no if latest is not None else 0
                if policy.max_participations is not None and count >= policy.max_participations:
                    session.rollback()
                    return REASON_MAX_PARTICIPATIONS
                if (
                    policy.cooldown is not None
                    and latest is not None
                    and now - latest.occurred_at < policy.cooldown
                ):
                    session.rollback()
                    return REASON_COOLDOWN
                session.add(
                    IdentityParticipation(
                        campaign_id=ctx.campaign_id,
                        identity_hash=identity_hash,
                        sequence_no=count + 1,
                        participation_id=ctx.participation_id,
                        occurred_at=now,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return REASON_CONCURRENT
                return None

    def record_block(
        self, ctx: DrawContext, identity_hash: str, reason: str, *, at: Optional[datetime] = None
    ) -> None:
        with persistence_errors("blocked participation"):
            with self._session_factory() as session:
                session.add(
                    BlockedParticipation(
                        campaign_id=ctx.campaign_id,
                        identity_hash=identity_hash,
                        participation_id=ctx.participation_id,
                        block_reason=reason,
                        created_at=at or ctx.server_timestamp,
                    )
                )
                session.commit()


__all__ = [
    "ClaimResult",
    "ParticipationRecord",
    "REASON_CONCURRENT",
    "REASON_COOLDOWN",
    "REASON_MAX_PARTICIPATIONS",
    "SqlParticipationStore",
]
