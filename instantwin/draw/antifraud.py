"""Anti-fraud gate: idempotency claim plus per-identity rate limiting."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import DrawInProgress, PersistenceError, RateLimited, ValidationError
from ..logging_utils import redact
from ..types import DrawContext, DrawOutcome, FraudPolicy
from .deadline import Deadline
from .participations import ParticipationRecord, SqlParticipationStore

logger = logging.getLogger(__name__)


def identity_digest(fingerprint: str) -> str:
    """SHA-256 of an identity fingerprint; the only form that is persisted."""
    return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Admission:
    """Result of :meth:`AntiFraudGate.admit`.

    Either ``outcome`` holds the stored result of an earlier request, or the
    participation id was claimed under ``claim_token``. ``resumed`` is set
    when the claim was taken over from a holder whose lease ended.
    """

    outcome: Optional[DrawOutcome] = None
    claim_token: Optional[str] = None
    resumed: bool = False

    @property
    def admitted(self) -> bool:
        return self.claim_token is not None


class AntiFraudGate:
    """Decide whether a participation may be drawn.

    :meth:`admit` either returns the stored outcome of an earlier request with
    the same participation id, raises, or claims the participation id. A
    claimed participation must later be settled with :meth:`settle` or given
    back with :meth:`release`.

    Parameters
    ----------
    store : SqlParticipationStore
        Persistence of claims and identity counters.
    poll_interval : float
        Seconds to wait between lookups while a duplicate request is pending.
    lease_grace : float
        Seconds a claim is held beyond the deadline of the draw that took it.
    """

    def __init__(
        self,
        store: SqlParticipationStore,
        *,
        poll_interval: float = 0.05,
        lease_grace: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._poll_interval = poll_interval
        self._lease_grace = lease_grace
        self._sleep = sleep

    def admit(self, ctx: DrawContext, policy: FraudPolicy, deadline: Deadline) -> Admission:
        identity_hash = identity_digest(ctx.identity_fingerprint)
        lease = deadline.remaining() + self._lease_grace

        with deadline.bound("participation lookup"):
            record = self._store.lookup(ctx.participation_id)
        while True:
            if record is None:
                with deadline.bound("participation claim"):
                    claim = self._store.insert_if_absent(ctx, identity_hash, lease=lease)
                if claim.inserted:
                    admission = Admission(claim_token=claim.token)
                    break
                # Lost the insert race; go on with the winner's row.
                record = claim.existing
                continue

            self._check_campaign(record, ctx)
            if not record.is_pending:
                return Admission(outcome=record.outcome)
            if record.lease_expired:
                with deadline.bound("claim takeover"):
                    token = self._store.take_over(ctx, identity_hash, lease=lease)
                if token is not None:
                    logger.warning(
                        f"Took over the expired claim of participation {ctx.participation_id}"
                    )
                    admission = Admission(claim_token=token, resumed=True)
                    break
            else:
                self._wait_for(record, deadline)
            with deadline.bound("participation lookup"):
                record = self._store.lookup(ctx.participation_id)

        try:
            with deadline.bound("rate check"):
                reason = self._store.record_identity_participation(ctx, identity_hash, policy)
        except PersistenceError:
            self.release(ctx, admission.claim_token)
            raise

        if reason is not None:
            self.release(ctx, admission.claim_token)
            self._record_block(ctx, identity_hash, reason)
            logger.info(
                f"Participation {ctx.participation_id} rejected ({reason}) "
                f"for identity {redact(ctx.identity_fingerprint)}"
            )
            raise RateLimited(reason)
        return admission

    def settle(self, outcome: DrawOutcome, claim_token: str) -> None:
        """Store ``outcome`` as the decided result of its claimed participation."""
        self._store.record_outcome(outcome, claim_token)

    def release(self, ctx: DrawContext, claim_token: str) -> None:
        """Give back a claim that will not be settled. Never raises."""
        try:
            self._store.release(ctx.participation_id, claim_token)
        except PersistenceError as exc:
            logger.error(f"Could not release claim of participation {ctx.participation_id}: {exc}")

    def _wait_for(self, record: ParticipationRecord, deadline: Deadline) -> None:
        if deadline.remaining() <= self._poll_interval:
            raise DrawInProgress(
                f"Participation {record.participation_id} is still being drawn"
            )
        logger.debug(f"Participation {record.participation_id} pending; waiting")
        self._sleep(self._poll_interval)
        if deadline.expired:
            raise DrawInProgress(
                f"Participation {record.participation_id} is still being drawn"
            )

    def _record_block(self, ctx: DrawContext, identity_hash: str, reason: str) -> None:
        try:
            self._store.record_block(ctx, identity_hash, reason)
        except PersistenceError as exc:
            logger.warning(f"Could not log blocked participation {ctx.participation_id}: {exc}")

    @staticmethod
    def _check_campaign(record: ParticipationRecord, ctx: DrawContext) -> None:
        if record.campaign_id != ctx.campaign_id:
            raise ValidationError(
                f"Participation {ctx.participation_id} belongs to campaign "
                f"{record.campaign_id}, not {ctx.campaign_id}"
            )


__all__ = ["Admission", "AntiFraudGate", "identity_digest"]
