"""Run many draws against a throwaway SQLite database and print the win rates."""

from __future__ import annotations

import argparse
import logging
import tempfile
from collections import Counter
from pathlib import Path

from instantwin.config import EngineSettings
from instantwin.db.engine import get_sessionmaker, make_engine
from instantwin.logging_utils import configure_logging
from instantwin.models import Base, Campaign, Prize
from instantwin.types import PrizeKind
from instantwin.workflows import (
    build_draw_orchestrator,
    run_instant_win_draw,
    summarize_prize_distribution,
)


def _seed(session_factory, weight_a: float, weight_b: float, no_win: float, stock: int) -> int:
    with session_factory.begin() as session:
        campaign = Campaign(name="Simulation", no_win_weight=no_win)
        campaign.prizes = [
            Prize(label="A", kind=PrizeKind.PROBABILITY.value, total_stock=stock,
                  weight=weight_a, position=0),
            Prize(label="B", kind=PrizeKind.PROBABILITY.value, total_stock=stock,
                  weight=weight_b, position=1),
        ]
        session.add(campaign)
        session.flush()
        return campaign.id


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--draws", type=int, default=2000)
    parser.add_argument("--weight-a", type=float, default=30.0)
    parser.add_argument("--weight-b", type=float, default=10.0)
    parser.add_argument("--no-win", type=float, default=60.0)
    parser.add_argument("--stock", type=int, default=1_000_000)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    configure_logging(args.log_level)
    logging.getLogger("instantwin").setLevel(args.log_level.upper())

    with tempfile.TemporaryDirectory() as tmp:
        url = f"sqlite:///{Path(tmp) / 'simulation.db'}"
        engine = make_engine(url)
        Base.metadata.create_all(engine)
        Session = get_sessionmaker(engine)
        campaign_id = _seed(Session, args.weight_a, args.weight_b, args.no_win, args.stock)

        settings = EngineSettings(database_url=url, audit_async=False)
        counts: Counter[str] = Counter()
        labels = {}
        with Session() as session:
            for row in summarize_prize_distribution(session, campaign_id):
                labels[row.prize_id] = row.label

        with build_draw_orchestrator(Session, settings) as orchestrator:
            for index in range(args.draws):
                outcome = run_instant_win_draw(
                    orchestrator,
                    participation_id=f"sim-{index}",
                    campaign_id=campaign_id,
                    identity_fingerprint=f"player-{index}",
                )
                counts[labels[outcome.prize_id] if outcome.is_win else "loss"] += 1

        total = sum(counts.values())
        for label in ("A", "B", "loss"):
            share = counts[label] / total * 100 if total else 0.0
            print(f"{label:>5}: {counts[label]:>7} ({share:5.2f}%)")
        engine.dispose()


if __name__ == "__main__":
    main()
