"""
Grounding Engine - Business Logic Layer

Core components:
- ConversationMemoryStore: stores, links, searches and maintains memories
- MemoryCleanupScheduler: periodic expired-memory sweep
- KnowledgeBase: verified-fact search, validation and source registry
- ContextBuilder: assembles the EnhancedContext for a learner
- ContextOptimizer: forces a context under a token limit
"""

from grounding.engine.memory_store import ConversationMemoryStore
from grounding.engine.maintenance import MemoryCleanupScheduler
from grounding.engine.knowledge_base import KnowledgeBase
from grounding.engine.context_builder import ContextBuilder
from grounding.engine.optimizer import ContextOptimizer

__all__ = [
    "ConversationMemoryStore",
    "MemoryCleanupScheduler",
    "KnowledgeBase",
    "ContextBuilder",
    "ContextOptimizer",
]
