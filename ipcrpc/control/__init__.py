from .correlator import PendingRequest, RequestCorrelator, Subscription
from .dispatch import EventDispatcher

__all__ = ["EventDispatcher", "PendingRequest", "RequestCorrelator", "Subscription"]
