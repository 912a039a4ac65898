"""
Storage Layer - Data Access

Components:
- Database: PostgreSQL connection with asyncpg
- Cache: in-process TTL cache or Redis
- Repositories: data access objects for each entity
"""

from grounding.storage.database import Database, get_database
from grounding.storage.cache import BaseCache, CacheService, InMemoryCache, get_cache

__all__ = [
    "Database",
    "get_database",
    "BaseCache",
    "CacheService",
    "InMemoryCache",
    "get_cache",
]
