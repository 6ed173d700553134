from .base import Base

# import models so metadata.create_all sees every mapper
from .campaign import Campaign, CampaignSegment, Prize, PrizeTimeSlot  # noqa: F401
from .participation import (  # noqa: F401
    BlockedParticipation,
    IdentityParticipation,
    Participation,
)
from .audit import DrawAuditRecord, StockReservation  # noqa: F401

__all__ = [
    "Base",
    "BlockedParticipation",
    "Campaign",
    "CampaignSegment",
    "DrawAuditRecord",
    "IdentityParticipation",
    "Participation",
    "Prize",
    "PrizeTimeSlot",
    "StockReservation",
]
