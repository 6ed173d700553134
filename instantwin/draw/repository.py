from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.orm import Session, sessionmaker

from ..errors import ValidationError, persistence_errors
from ..models import Campaign
from ..types import CampaignSnapshot

logger = logging.getLogger(__name__)


class CampaignReader(Protocol):
    def load_campaign(self, campaign_id: int) -> CampaignSnapshot:
        ...


class SqlCampaignRepository:
    """Load validated :class:`CampaignSnapshot` objects from the ORM tables."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load_campaign(self, campaign_id: int) -> CampaignSnapshot:
        with persistence_errors("campaign load"):
            with self._session_factory() as session:
                campaign = Campaign.load_for_draw(session, campaign_id)
                if campaign is None:
                    raise ValidationError(f"Unknown campaign {campaign_id}")
                try:
                    snapshot = campaign.to_snapshot()
                except ValueError as exc:
                    raise ValidationError(f"Campaign {campaign_id}: {exc}") from exc
        snapshot.validate()
        logger.debug(
            f"Loaded campaign {campaign_id} with {len(snapshot.prizes)} prizes "
            f"and {len(snapshot.segments)} segments"
        )
        return snapshot


__all__ = ["CampaignReader", "SqlCampaignRepository"]
