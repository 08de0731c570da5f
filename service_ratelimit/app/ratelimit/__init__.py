"""
Rate limiting package for the gateway.

Holds the token-bucket primitive, the per-client state store with its
eviction sweep, and the limiter policy consulted by the admission pipeline.
"""

from .limiter import RateLimiter, Stat
from .store import InMemoryStore, Store
from .token_bucket import TokenBucket

__all__ = ["RateLimiter", "Stat", "InMemoryStore", "Store", "TokenBucket"]
