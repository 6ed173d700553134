from datetime import datetime, timedelta, timezone

from instantwin.config import EngineSettings
from instantwin.db.engine import get_sessionmaker, make_engine
from instantwin.models import Base, Campaign, CampaignSegment, Prize, PrizeTimeSlot
from instantwin.types import PrizeKind, calendar_slot


def main() -> None:
    """Seed the development database with a demo wheel campaign."""
    settings = EngineSettings.from_env()
    engine = make_engine(
        settings.database_url, sqlite_busy_timeout=settings.sqlite_busy_timeout
    )

    # Children are dropped before parents, so foreign keys can stay enforced.
    Base.metadata.drop_all(engine)

    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)

    now = datetime.now(timezone.utc)
    today = now.date()

    with Session.begin() as session:
        campaign = Campaign(
            name="Summer Wheel",
            no_win_weight=60.0,
            cooldown_seconds=60,
            max_participations=5,
        )
        session.add(campaign)
        session.flush()

        segments = [
            CampaignSegment(label="Voucher", is_winning=True, position=0),
            CampaignSegment(label="Try again", position=1),
            CampaignSegment(label="T-shirt", is_winning=True, position=2),
            CampaignSegment(label="So close", position=3),
            CampaignSegment(label="Headphones", is_winning=True, position=4),
            CampaignSegment(label="Next time", position=5),
        ]
        campaign.segments = segments
        session.flush()

        noon_start, noon_end = calendar_slot(today, "12:00")
        evening_start, evening_end = calendar_slot(today, "18:30", window_minutes=10)
        headphones = Prize(
            label="Headphones",
            kind=PrizeKind.CALENDAR.value,
            total_stock=2,
            position=0,
            assigned_segments=[segments[4].id],
            slots=[
                PrizeTimeSlot(start_at=noon_start, end_at=noon_end, position=0),
                PrizeTimeSlot(start_at=evening_start, end_at=evening_end, position=1),
            ],
        )
        voucher = Prize(
            label="10% voucher",
            kind=PrizeKind.PROBABILITY.value,
            total_stock=100,
            weight=30.0,
            position=1,
            assigned_segments=[segments[0].id],
        )
        tshirt = Prize(
            label="T-shirt",
            kind=PrizeKind.PROBABILITY.value,
            total_stock=20,
            weight=10.0,
            position=2,
            active_from=now,
            active_until=now + timedelta(days=14),
            assigned_segments=[segments[2].id],
        )
        campaign.prizes = [headphones, voucher, tshirt]
        session.flush()
        campaign_id = campaign.id

    print(f"Development database seeded (campaign id {campaign_id}).")


if __name__ == "__main__":
    main()
