from .decay import FreshnessPolicy, days_until_expiry, freshness
from .engine import MemoryGraphEngine, clamp_importance, validate_content
from .locks import LocalOwnerLock, NullOwnerLock, OwnerLock, RedisOwnerLock, build_owner_lock
from .metadata import snapshot_metadata
from .resolver import RelationshipResolver, classify_edge

__all__ = [
    "FreshnessPolicy",
    "days_until_expiry",
    "freshness",
    "MemoryGraphEngine",
    "clamp_importance",
    "validate_content",
    "LocalOwnerLock",
    "NullOwnerLock",
    "OwnerLock",
    "RedisOwnerLock",
    "build_owner_lock",
    "snapshot_metadata",
    "RelationshipResolver",
    "classify_edge",
]
