from .batching import BatchAggregator, RequestSpec
from .cache import MISSING, CacheEntry, ResponseCache
from .concurrency import AdmissionQueue

__all__ = [
    "AdmissionQueue",
    "BatchAggregator",
    "RequestSpec",
    "CacheEntry",
    "MISSING",
    "ResponseCache",
]
