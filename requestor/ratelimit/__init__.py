"""
Rate limiting package for the requestor.

Holds the per-host token bucket that caps outbound call volume across every
process sharing the same store.
"""

from .token_bucket import TokenBucketRateLimiter

__all__ = ["TokenBucketRateLimiter"]
