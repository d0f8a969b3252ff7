"""Monthly token quota: cache, storage and the tracker the worker consults."""

from .cache import UsageCache
from .repository import InMemoryUsageRepository, SqlUsageRepository, month_start
from .tracker import (
    LIMIT_REACHED_MESSAGE,
    TRIAL_TOKEN_LIMIT,
    TokenUsageStatus,
    UsageQuotaTracker,
    UsageRegistration,
)

__all__ = [
    "LIMIT_REACHED_MESSAGE",
    "TRIAL_TOKEN_LIMIT",
    "InMemoryUsageRepository",
    "SqlUsageRepository",
    "TokenUsageStatus",
    "UsageCache",
    "UsageQuotaTracker",
    "UsageRegistration",
    "month_start",
]
