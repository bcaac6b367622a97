from hybrid_brain.resources.cache import BoundedTTLCache, CacheEntry
from hybrid_brain.resources.manager import ResourceManager, SweepReport

__all__ = ["BoundedTTLCache", "CacheEntry", "ResourceManager", "SweepReport"]
