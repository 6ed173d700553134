import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from instantwin.models import (
    Base,
    Campaign,
    CampaignSegment,
    DrawAuditRecord,
    IdentityParticipation,
    Participation,
    Prize,
    PrizeTimeSlot,
)
from instantwin.models.participation import STATUS_DECIDED
from instantwin.types import DrawOutcome, DrawResult, PrizeKind, RngDraw

T0 = datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc)


class DBTestCase(unittest.TestCase):
    def setUp(self):
        # In-memory SQLite for isolation
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )

    def tearDown(self):
        self.engine.dispose()

    def _campaign(self, session, **kwargs):
        campaign = Campaign(name="Wheel", **kwargs)
        session.add(campaign)
        session.flush()
        return campaign

    def test_prize_defaults_remaining_to_total(self):
        prize = Prize(label="Mug", kind="probability", total_stock=7, weight=2.5)
        self.assertEqual(prize.remaining_stock, 7)
        self.assertIsNone(prize.assigned_segments)

    def test_prize_rejects_unknown_kind(self):
        with self.assertRaises(ValueError):
            Prize(label="Mug", kind="lottery", total_stock=1)

    def test_remaining_stock_cannot_exceed_total(self):
        with self.Session() as session:
            campaign = self._campaign(session)
            session.add(
                Prize(
                    label="Mug",
                    kind="probability",
                    total_stock=1,
                    remaining_stock=2,
                    weight=1,
                    campaign_id=campaign.id,
                )
            )
            with self.assertRaises(IntegrityError):
                session.commit()

    def test_slot_must_end_after_start(self):
        with self.Session() as session:
            campaign = self._campaign(session)
            prize = Prize(label="Bike", kind="calendar", total_stock=1, campaign=campaign)
            prize.slots = [PrizeTimeSlot(start_at=T0, end_at=T0)]
            session.add(prize)
            with self.assertRaises(IntegrityError):
                session.commit()

    def test_offset_datetimes_are_stored_as_utc(self):
        local = timezone(timedelta(hours=2))
        start = datetime(2026, 7, 1, 12, 0, tzinfo=local)
        with self.Session() as session:
            campaign = self._campaign(session)
            prize = Prize(label="Bike", kind="calendar", total_stock=1, campaign=campaign)
            prize.slots = [PrizeTimeSlot(start_at=start, end_at=start + timedelta(minutes=5))]
            session.add(prize)
            session.commit()
            slot_id = prize.slots[0].id

        with self.Session() as session:
            stored = session.get(PrizeTimeSlot, slot_id)
            self.assertEqual(stored.start_at, T0)
            self.assertEqual(stored.start_at.utcoffset(), timedelta(0))
            self.assertEqual(stored.end_at, T0 + timedelta(minutes=5))

    def test_participation_id_is_unique(self):
        with self.Session() as session:
            campaign = self._campaign(session)
            session.add(
                Participation(participation_id="p-1", campaign_id=campaign.id, identity_hash="h")
            )
            session.commit()
            session.add(
                Participation(participation_id="p-1", campaign_id=campaign.id, identity_hash="h")
            )
            with self.assertRaises(IntegrityError):
                session.commit()

    def test_identity_sequence_is_unique(self):
        with self.Session() as session:
            campaign = self._campaign(session)
            for participation_id in ("p-1", "p-2"):
                session.add(
                    IdentityParticipation(
                        campaign_id=campaign.id,
                        identity_hash="h",
                        sequence_no=1,
                        participation_id=participation_id,
                        occurred_at=T0,
                    )
                )
            with self.assertRaises(IntegrityError):
                session.commit()

    def test_latest_identity_participation(self):
        with self.Session() as session:
            campaign = self._campaign(session)
            for sequence_no in (1, 2, 3):
                session.add(
                    IdentityParticipation(
                        campaign_id=campaign.id,
                        identity_hash="h",
                        sequence_no=sequence_no,
                        participation_id=f"p-{sequence_no}",
                        occurred_at=T0 + timedelta(minutes=sequence_no),
                    )
                )
            session.commit()
            latest = IdentityParticipation.latest(session, campaign.id, "h")
            self.assertEqual(latest.participation_id, "p-3")
            self.assertIsNone(IdentityParticipation.latest(session, campaign.id, "other"))

    def test_campaign_snapshot(self):
        with self.Session() as session:
            campaign = self._campaign(
                session, no_win_weight=60, cooldown_seconds=30, max_participations=3
            )
            segment = CampaignSegment(label="Win", is_winning=True, campaign=campaign)
            session.add(segment)
            session.flush()
            calendar = Prize(
                label="Bike",
                kind="calendar",
                total_stock=1,
                position=1,
                campaign=campaign,
                assigned_segments=[segment.id],
            )
            calendar.slots = [
                PrizeTimeSlot(start_at=T0, end_at=T0 + timedelta(minutes=5)),
            ]
            probability = Prize(
                label="Mug", kind="probability", total_stock=5, weight=30, campaign=campaign
            )
            session.add_all([calendar, probability])
            session.commit()
            campaign_id = campaign.id

        with self.Session() as session:
            snapshot = Campaign.load_for_draw(session, campaign_id).to_snapshot()

        snapshot.validate()
        self.assertEqual([p.label for p in snapshot.prizes], ["Mug", "Bike"])
        self.assertEqual(snapshot.no_win_weight, 60.0)
        self.assertEqual(snapshot.policy.cooldown, timedelta(seconds=30))
        self.assertEqual(snapshot.policy.max_participations, 3)
        bike = snapshot.prizes[1]
        self.assertIs(bike.kind, PrizeKind.CALENDAR)
        self.assertEqual(bike.assigned_segments, (snapshot.segments[0].id,))
        # SQLite drops the offset; snapshots read it back as UTC.
        self.assertEqual(bike.slots[0].start, T0)
        self.assertEqual(bike.slots[0].start.tzinfo, timezone.utc)

    def test_load_unknown_campaign(self):
        with self.Session() as session:
            self.assertIsNone(Campaign.load_for_draw(session, 42))

    def test_participation_outcome_round_trip(self):
        outcome = DrawOutcome(
            participation_id="p-1",
            campaign_id=1,
            result=DrawResult.WIN,
            decided_at=T0,
            prize_id=3,
            resolver="probability",
            rng_trace=(RngDraw(purpose="probability", low=0, high=100, value=12.5),),
        )
        with self.Session() as session:
            campaign = self._campaign(session)
            row = Participation(participation_id="p-1", campaign_id=campaign.id, identity_hash="h")
            self.assertIsNone(row.outcome())
            row.status = STATUS_DECIDED
            row.outcome_json = outcome.to_json()
            session.add(row)
            session.commit()

        with self.Session() as session:
            stored = Participation.get_by_participation_id(session, "p-1")
            self.assertEqual(stored.outcome(), outcome)
            self.assertEqual(stored.outcome().to_json(), outcome.to_json())

    def test_audit_records_for_participation(self):
        with self.Session() as session:
            session.add(
                DrawAuditRecord(
                    participation_id="p-1",
                    campaign_id=1,
                    result="loss",
                    details_json="{}",
                    digest="0" * 64,
                )
            )
            session.commit()
            records = DrawAuditRecord.for_participation(session, "p-1")
            self.assertEqual(len(records), 1)
            self.assertIsNotNone(records[0].recorded_at)


if __name__ == "__main__":
    unittest.main()
