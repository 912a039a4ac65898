"""
Repository Pattern - Data Access Objects

Each repository handles CRUD operations for its entity:
- MemoryRepository: conversation memories
- KnowledgeRepository: knowledge entries and fact relationships
- SourceRepository: educational sources
- ProfileRepository: learner preferences, gamification and activity
"""

from grounding.storage.repositories.memory_repo import MemoryRepository
from grounding.storage.repositories.knowledge_repo import KnowledgeRepository
from grounding.storage.repositories.source_repo import SourceRepository
from grounding.storage.repositories.profile_repo import ProfileRepository

__all__ = [
    "MemoryRepository",
    "KnowledgeRepository",
    "SourceRepository",
    "ProfileRepository",
]
