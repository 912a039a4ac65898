"""
Pydantic Models

Core data structures:
- Memory: a stored conversation interaction
- KnowledgeEntry / EducationalSource: verified facts and their sources
- EnhancedContext: the assembled grounding context
- OptimizationResult: token-budget optimization report
- GroundingResult: report of one run of the grounding pipeline
- Request/Response schemas for the memory store and knowledge base
"""

from grounding.models.memory import (
    LinkType,
    Memory,
    MemoryCreate,
    MemoryLink,
    MemoryMetadata,
    MemoryPriority,
    MemoryRetention,
    MemoryType,
    InteractionData,
)
from grounding.models.knowledge import (
    ContentType,
    EducationalSource,
    FactRelationship,
    KnowledgeEntry,
    KnowledgeEntryCreate,
    RelationshipType,
    SourceCreate,
    SourceType,
    VerificationStatus,
)
from grounding.models.profile import (
    ConversationSummary,
    GamificationRecord,
    LearningPreferences,
    StudySession,
    UltraCompressedProfile,
)
from grounding.models.context import (
    CONTEXT_LEVELS,
    ContextBuildRequest,
    ContextLevel,
    EnhancedContext,
    TokenUsage,
)
from grounding.models.optimization import (
    ContextComponent,
    OptimizationRequest,
    OptimizationResult,
    OptimizationStrategy,
    TokenBudget,
)
from grounding.models.grounding import (
    GroundingMetrics,
    GroundingRequest,
    GroundingResult,
    StageName,
    StageStatus,
)

__all__ = [
    # Memory
    "InteractionData",
    "LinkType",
    "Memory",
    "MemoryCreate",
    "MemoryLink",
    "MemoryMetadata",
    "MemoryPriority",
    "MemoryRetention",
    "MemoryType",
    # Knowledge
    "ContentType",
    "EducationalSource",
    "FactRelationship",
    "KnowledgeEntry",
    "KnowledgeEntryCreate",
    "RelationshipType",
    "SourceCreate",
    "SourceType",
    "VerificationStatus",
    # Profile
    "ConversationSummary",
    "GamificationRecord",
    "LearningPreferences",
    "StudySession",
    "UltraCompressedProfile",
    # Context
    "CONTEXT_LEVELS",
    "ContextBuildRequest",
    "ContextLevel",
    "EnhancedContext",
    "TokenUsage",
    # Optimization
    "ContextComponent",
    "OptimizationRequest",
    "OptimizationResult",
    "OptimizationStrategy",
    "TokenBudget",
    # Grounding
    "GroundingMetrics",
    "GroundingRequest",
    "GroundingResult",
    "StageName",
    "StageStatus",
]
