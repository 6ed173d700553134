from __future__ import annotations

import hashlib
import tempfile
import threading
import unittest
from datetime import timedelta
from pathlib import Path

from sqlalchemy import func, select

from instantwin.draw.antifraud import AntiFraudGate, identity_digest
from instantwin.draw.deadline import Deadline
from instantwin.draw.participations import SqlParticipationStore
from instantwin.errors import (
    DrawInProgress,
    PersistenceError,
    PersistenceTimeout,
    RateLimited,
    ValidationError,
)
from instantwin.models import BlockedParticipation, IdentityParticipation, Participation
from instantwin.types import DrawOutcome, DrawResult, FraudPolicy

from .support import T0, create_database, make_ctx, seed_campaign


def _loss(ctx) -> DrawOutcome:
    return DrawOutcome(
        participation_id=ctx.participation_id,
        campaign_id=ctx.campaign_id,
        result=DrawResult.LOSS,
        decided_at=ctx.server_timestamp,
    )


class AntiFraudGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = create_database()
        self.campaign = seed_campaign(self.Session)
        self.store = SqlParticipationStore(self.Session)
        self.gate = AntiFraudGate(self.store, poll_interval=0.01)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _admit(self, ctx, policy=FraudPolicy(), seconds: float = 5.0):
        return self.gate.admit(ctx, policy, Deadline(seconds))

    def _identity_rows(self) -> int:
        with self.Session() as session:
            return session.scalar(select(func.count()).select_from(IdentityParticipation))

    def test_first_admission_claims_participation(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id)
        admission = self._admit(ctx)
        self.assertTrue(admission.admitted)
        self.assertFalse(admission.resumed)
        self.assertIsNone(admission.outcome)
        with self.Session() as session:
            row = Participation.get_by_participation_id(session, "p-1")
            self.assertEqual(row.status, "pending")
            self.assertEqual(row.claim_token, admission.claim_token)
            self.assertIsNotNone(row.claim_expires_at)
            self.assertEqual(
                row.identity_hash,
                hashlib.sha256(ctx.identity_fingerprint.encode("utf-8")).hexdigest(),
            )
            self.assertNotEqual(row.identity_hash, ctx.identity_fingerprint)

    def test_settled_participation_returns_stored_outcome(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id)
        admission = self._admit(ctx)
        outcome = _loss(ctx)
        self.gate.settle(outcome, admission.claim_token)

        again = self._admit(ctx)
        self.assertFalse(again.admitted)
        self.assertEqual(again.outcome.to_json(), outcome.to_json())
        self.assertEqual(self.store.lookup("p-1").outcome, outcome)

    def test_only_the_claim_holder_can_settle(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id)
        self._admit(ctx)
        with self.assertRaises(PersistenceError):
            self.gate.settle(_loss(ctx), "not-the-holder")
        self.assertTrue(self.store.lookup("p-1").is_pending)

    def test_pending_duplicate_times_out(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id)
        self._admit(ctx)
        with self.assertRaises(DrawInProgress) as raised:
            self._admit(ctx, seconds=0.05)
        self.assertTrue(raised.exception.retryable)

    def test_expired_claim_is_taken_over(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id)
        policy = FraudPolicy(max_participations=1)
        # A holder that never came back: its lease is already over.
        stale = self.store.insert_if_absent(ctx, identity_digest(ctx.identity_fingerprint), lease=0.0)
        self.assertIsNone(
            self.store.record_identity_participation(
                ctx, identity_digest(ctx.identity_fingerprint), policy
            )
        )

        admission = self._admit(ctx, policy)
        self.assertTrue(admission.admitted)
        self.assertTrue(admission.resumed)
        self.assertNotEqual(admission.claim_token, stale.token)
        self.assertEqual(self._identity_rows(), 1)

        with self.assertRaises(PersistenceError):
            self.gate.settle(_loss(ctx), stale.token)
        self.gate.settle(_loss(ctx), admission.claim_token)
        self.assertFalse(self.store.lookup("p-1").is_pending)

    def test_participation_of_another_campaign_is_invalid(self) -> None:
        other = seed_campaign(self.Session, name="Other")
        self._admit(make_ctx("p-1", self.campaign.id))
        with self.assertRaises(ValidationError):
            self._admit(make_ctx("p-1", other.id))

    def test_max_participations(self) -> None:
        policy = FraudPolicy(max_participations=1)
        self._admit(make_ctx("p-1", self.campaign.id, identity="phone"), policy)

        with self.assertRaises(RateLimited) as raised:
            self._admit(
                make_ctx("p-2", self.campaign.id, T0 + timedelta(hours=1), identity="phone"),
                policy,
            )
        self.assertEqual(raised.exception.reason, "max_participations")
        with self.Session() as session:
            self.assertIsNone(Participation.get_by_participation_id(session, "p-2"))
            blocked = session.scalars(select(BlockedParticipation)).all()
            self.assertEqual([b.block_reason for b in blocked], ["max_participations"])
            self.assertEqual(blocked[0].identity_hash, identity_digest("phone"))

    def test_cooldown(self) -> None:
        policy = FraudPolicy(cooldown=timedelta(minutes=1))
        self._admit(make_ctx("p-1", self.campaign.id, identity="phone"), policy)

        with self.assertRaises(RateLimited) as raised:
            self._admit(
                make_ctx("p-2", self.campaign.id, T0 + timedelta(seconds=30), identity="phone"),
                policy,
            )
        self.assertEqual(raised.exception.reason, "cooldown")

        later = make_ctx("p-3", self.campaign.id, T0 + timedelta(seconds=61), identity="phone")
        self.assertTrue(self._admit(later, policy).admitted)

    def test_other_identities_are_not_limited(self) -> None:
        policy = FraudPolicy(cooldown=timedelta(minutes=1), max_participations=1)
        self._admit(make_ctx("p-1", self.campaign.id, identity="phone-a"), policy)
        self.assertTrue(
            self._admit(make_ctx("p-2", self.campaign.id, identity="phone-b"), policy).admitted
        )

    def test_release_gives_back_the_participation(self) -> None:
        policy = FraudPolicy(max_participations=1)
        first = make_ctx("p-1", self.campaign.id, identity="phone")
        admission = self._admit(first, policy)
        self.gate.release(first, admission.claim_token)

        with self.Session() as session:
            self.assertIsNone(Participation.get_by_participation_id(session, "p-1"))
        self.assertEqual(self._identity_rows(), 0)
        self.assertTrue(
            self._admit(make_ctx("p-2", self.campaign.id, identity="phone"), policy).admitted
        )

    def test_release_keeps_a_decided_participation(self) -> None:
        ctx = make_ctx("p-1", self.campaign.id, identity="phone")
        admission = self._admit(ctx, FraudPolicy(max_participations=1))
        self.gate.settle(_loss(ctx), admission.claim_token)

        self.gate.release(ctx, admission.claim_token)
        self.assertFalse(self.store.lookup("p-1").is_pending)
        self.assertEqual(self._identity_rows(), 1)

    def test_expired_deadline(self) -> None:
        with self.assertRaises(PersistenceTimeout):
            self._admit(make_ctx("p-1", self.campaign.id), seconds=0.0)


class AntiFraudRaceTests(unittest.TestCase):
    """Several participation ids from one identity arriving at the same time."""

    workers = 6

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        url = f"sqlite:///{Path(self.tmpdir.name) / 'gate.db'}"
        self.engine, self.Session = create_database(url)
        self.campaign = seed_campaign(self.Session)
        self.gate = AntiFraudGate(SqlParticipationStore(self.Session), poll_interval=0.01)

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _race(self, policy: FraudPolicy):
        barrier = threading.Barrier(self.workers)
        admitted, rejected, errors = [], [], []
        lock = threading.Lock()

        def worker(index: int) -> None:
            ctx = make_ctx(f"p-{index}", self.campaign.id, identity="phone")
            barrier.wait()
            try:
                admission = self.gate.admit(ctx, policy, Deadline(30.0))
            except RateLimited as exc:
                with lock:
                    rejected.append(exc.reason)
                return
            except Exception as exc:  # surfaced by the assertion below
                with lock:
                    errors.append(exc)
                return
            with lock:
                admitted.append(admission)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        return admitted, rejected

    def _identity_rows(self) -> int:
        with self.Session() as session:
            return session.scalar(select(func.count()).select_from(IdentityParticipation))

    def test_max_participations_admits_exactly_one(self) -> None:
        admitted, rejected = self._race(FraudPolicy(max_participations=1))
        self.assertEqual(len(admitted), 1)
        self.assertEqual(len(rejected), self.workers - 1)
        self.assertTrue(
            set(rejected) <= {"max_participations", "concurrent_participation"}
        )
        self.assertEqual(self._identity_rows(), 1)

    def test_cooldown_admits_exactly_one(self) -> None:
        admitted, rejected = self._race(FraudPolicy(cooldown=timedelta(minutes=1)))
        self.assertEqual(len(admitted), 1)
        self.assertTrue(set(rejected) <= {"cooldown", "concurrent_participation"})
        self.assertEqual(self._identity_rows(), 1)


if __name__ == "__main__":
    unittest.main()
