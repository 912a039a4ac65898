"""
Test Data Factories

Builders for memories, knowledge entries and contexts with fixed scores
and timestamps.
"""

from datetime import datetime, timezone
from uuid import UUID

from grounding.models.context import EnhancedContext
from grounding.models.knowledge import (
    ContentType,
    EducationalSource,
    KnowledgeEntry,
    SourceType,
    VerificationStatus,
)
from grounding.models.memory import (
    InteractionData,
    Memory,
    MemoryCreate,
    MemoryPriority,
    MemoryRetention,
    MemoryType,
    compute_expiry,
)
from grounding.models.profile import ConversationSummary, UltraCompressedProfile

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def create_memory_data(
    user_id: UUID,
    content: str = "How does photosynthesis work in plants?",
    memory_type: MemoryType = MemoryType.USER_QUERY,
    topic: str | None = "photosynthesis",
    priority: MemoryPriority = MemoryPriority.MEDIUM,
    retention: MemoryRetention = MemoryRetention.LONG_TERM,
    conversation_id: str | None = "conv-1",
    tags: list[str] | None = None,
    **interaction,
) -> MemoryCreate:
    """Factory function to create memory creation requests."""
    return MemoryCreate(
        user_id=user_id,
        conversation_id=conversation_id,
        memory_type=memory_type,
        interaction_data=InteractionData(content=content, topic=topic, **interaction),
        priority=priority,
        retention=retention,
        tags=tags or [],
    )


def create_test_memory(
    user_id: UUID,
    content: str = "Test memory content",
    memory_type: MemoryType = MemoryType.USER_QUERY,
    quality_score: float = 0.6,
    relevance: float = 0.6,
    priority: MemoryPriority = MemoryPriority.MEDIUM,
    retention: MemoryRetention = MemoryRetention.LONG_TERM,
    created_at: datetime | None = None,
    topic: str | None = None,
    conversation_id: str | None = "conv-1",
) -> Memory:
    """Factory function to create stored memories with fixed scores."""
    created_at = created_at or BASE_TIME
    return Memory(
        user_id=user_id,
        conversation_id=conversation_id,
        memory_type=memory_type,
        interaction_data=InteractionData(content=content, topic=topic),
        quality_score=quality_score,
        memory_relevance_score=relevance,
        priority=priority,
        retention=retention,
        created_at=created_at,
        updated_at=created_at,
        expires_at=compute_expiry(retention, created_at),
    )


def create_test_entry(
    source_id: UUID,
    content: str = "Photosynthesis converts light energy into chemical energy stored in glucose.",
    confidence: float = 0.9,
    educational_value: float = 0.8,
    subject: str | None = "biology",
    topics: list[str] | None = None,
    content_type: ContentType = ContentType.FACT,
    verification_status: VerificationStatus = VerificationStatus.VERIFIED,
    created_at: datetime | None = None,
) -> KnowledgeEntry:
    """Factory function to create stored knowledge entries."""
    created_at = created_at or BASE_TIME
    return KnowledgeEntry(
        source_id=source_id,
        content=content,
        content_type=content_type,
        subject=subject,
        topics=topics if topics is not None else ["photosynthesis"],
        confidence=confidence,
        educational_value=educational_value,
        verification_status=verification_status,
        created_at=created_at,
        updated_at=created_at,
    )


def create_test_source(
    content: str = "Photosynthesis converts light energy into chemical energy.",
    reliability: float = 0.9,
    educational_relevance: float = 0.8,
    topics: list[str] | None = None,
) -> EducationalSource:
    return EducationalSource(
        title="Open Biology",
        source_type=SourceType.TEXTBOOK,
        reliability=reliability,
        verification_status=VerificationStatus.VERIFIED,
        subject="biology",
        topics=topics if topics is not None else ["biology"],
        content=content,
        educational_relevance=educational_relevance,
    )


def create_large_context(user_id: UUID, sentences: int = 10) -> EnhancedContext:
    """
    A context of roughly 5000 estimated tokens.

    Ten knowledge entries, eight conversation summaries and five sources,
    each carrying `sentences` sentences of text.
    """
    sentence = "Chlorophyll absorbs red and blue light to drive the light reactions of photosynthesis. "
    text = sentence * sentences

    knowledge = [
        create_test_entry(
            source_id=UUID(int=i + 1),
            content=text,
            confidence=0.85 + i * 0.01,
            educational_value=0.5 + i * 0.05,
        )
        for i in range(10)
    ]
    history = [
        ConversationSummary(
            conversation_id=f"conv-{i}",
            summary=text,
            key_topics=["photosynthesis", "light", "chlorophyll", "glucose"],
            quality_score=0.4 + i * 0.05,
            created_at=BASE_TIME,
        )
        for i in range(8)
    ]
    sources = [create_test_source(content=text, educational_relevance=0.5 + i * 0.1) for i in range(5)]

    return EnhancedContext(
        student_profile=UltraCompressedProfile(user_id=user_id),
        knowledge_base=knowledge,
        conversation_history=history,
        external_sources=sources,
        last_optimized=BASE_TIME,
    )
