"""Instant-win draw engine: resolvers, stock ledger and orchestrator."""

from .antifraud import Admission, AntiFraudGate, identity_digest
from .audit import AuditDispatcher, AuditSink, SqlAuditSink
from .deadline import Deadline
from .engine import DrawOrchestrator
from .ledger import SqlStockLedger, StockLedger
from .participations import ClaimResult, ParticipationRecord, SqlParticipationStore
from .random_source import RandomSource, SystemRandomSource, checked_uniform
from .repository import CampaignReader, SqlCampaignRepository
from .segments import SegmentChoice, SegmentPicker
from .slots import SlotCandidate, SlotResolver
from .weighted import (
    WeightInterval,
    WeightPartition,
    WeightedDraw,
    WeightedDrawResolver,
    build_partition,
)

__all__ = [
    "Admission",
    "AntiFraudGate",
    "AuditDispatcher",
    "AuditSink",
    "CampaignReader",
    "ClaimResult",
    "Deadline",
    "DrawOrchestrator",
    "ParticipationRecord",
    "RandomSource",
    "SegmentChoice",
    "SegmentPicker",
    "SlotCandidate",
    "SlotResolver",
    "SqlAuditSink",
    "SqlCampaignRepository",
    "SqlParticipationStore",
    "SqlStockLedger",
    "StockLedger",
    "SystemRandomSource",
    "WeightInterval",
    "WeightPartition",
    "WeightedDraw",
    "WeightedDrawResolver",
    "build_partition",
    "checked_uniform",
    "identity_digest",
]
