"""
Admission control.

Rate limiting (sliding window per owner and origin, rapid-fire blocking)
and an in-flight job gauge, applied before any credit or provider work.
"""

from .controller import (
    UNKNOWN_ORIGIN,
    AdmissionController,
    ConcurrencyDecision,
    RateDecision,
    RateLimitStatus,
    client_origin,
)
from .redis import RedisAdmissionState
from .state import AdmissionState, InMemoryAdmissionState, WindowSnapshot

__all__ = [
    "UNKNOWN_ORIGIN",
    "AdmissionController",
    "ConcurrencyDecision",
    "RateDecision",
    "RateLimitStatus",
    "client_origin",
    "AdmissionState",
    "InMemoryAdmissionState",
    "RedisAdmissionState",
    "WindowSnapshot",
]
