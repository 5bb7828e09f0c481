"""
Cached requestor.

Middleware for outbound HTTP requests: shared response caching, collapsing of
identical concurrent requests behind a distributed lock, and per-host token
bucket rate limiting.
"""

from .models import CachePolicy, RequestDescriptor, RequestResult, ResponseDescriptor, ThrottleConfig
from .orchestrator import RequestOrchestrator
from .requestor import Requestor

__all__ = [
    "CachePolicy",
    "RequestDescriptor",
    "RequestOrchestrator",
    "RequestResult",
    "Requestor",
    "ResponseDescriptor",
    "ThrottleConfig",
]
