"""Database models."""
from funnelwatch.models.models import (
    Funnel,
    FunnelStep,
    FunnelEntry,
    StepDailyAggregate,
    FunnelDailyAggregate,
    Alert,
    SyncLog,
    SyncLease,
)

__all__ = [
    "Funnel",
    "FunnelStep",
    "FunnelEntry",
    "StepDailyAggregate",
    "FunnelDailyAggregate",
    "Alert",
    "SyncLog",
    "SyncLease",
]
