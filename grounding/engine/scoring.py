"""
Scoring Policies

Named, overridable weights for the memory and knowledge heuristics,
together with the pure scoring functions that use them. Services take a
policy in their constructor so products can tune weights and tests can
assert exact values.
"""

from pydantic import BaseModel, Field

from grounding.engine.text import jaccard, words
from grounding.models.knowledge import KnowledgeEntry
from grounding.models.memory import (
    Complexity,
    Memory,
    MemoryCreate,
    MemoryPriority,
    MemoryType,
    Sentiment,
)
from grounding.models.requests import KnowledgeSearchFilters, Strictness


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class MemoryScoringPolicy(BaseModel):
    """Weights used to score, compare and search conversation memories."""

    model_config = {"frozen": True}

    # Quality
    quality_base: float = 0.5
    quality_content_length: float = 0.1
    quality_min_content_length: int = 10
    quality_complex: float = 0.1
    quality_positive_sentiment: float = 0.1
    quality_response: float = 0.2
    quality_confident_response: float = 0.1
    quality_response_confidence: float = 0.8
    quality_learning_objective: float = 0.1
    quality_topic: float = 0.05
    quality_fast_processing: float = 0.05
    quality_fast_processing_ms: int = 5000
    quality_low_tokens: float = 0.05
    quality_low_tokens_limit: int = 1000

    # Stored relevance
    relevance_base: float = 0.3
    priority_weights: dict[MemoryPriority, float] = Field(
        default_factory=lambda: {
            MemoryPriority.LOW: 0.1,
            MemoryPriority.MEDIUM: 0.2,
            MemoryPriority.HIGH: 0.3,
            MemoryPriority.CRITICAL: 0.4,
        }
    )
    type_weights: dict[MemoryType, float] = Field(
        default_factory=lambda: {
            MemoryType.USER_QUERY: 0.2,
            MemoryType.AI_RESPONSE: 0.15,
            MemoryType.LEARNING_INTERACTION: 0.25,
            MemoryType.FEEDBACK: 0.2,
            MemoryType.CORRECTION: 0.3,
            MemoryType.INSIGHT: 0.35,
        }
    )
    relevance_content: float = 0.2
    relevance_topic: float = 0.1
    relevance_tags: float = 0.1

    # Similarity
    similarity_topic: float = 0.4
    similarity_content: float = 0.4
    similarity_type: float = 0.2

    # Query relevance
    search_content: float = 0.3
    search_topic: float = 0.4
    search_subject: float = 0.2
    search_tag: float = 0.25
    search_quality: float = 0.2
    search_min_relevance: float = 0.1

    # Feedback and integration
    correction_penalty: float = 0.5
    knowledge_candidate_quality: float = 0.8
    high_quality: float = 0.8


class KnowledgeScoringPolicy(BaseModel):
    """Weights used for knowledge search and fact validation."""

    model_config = {"frozen": True}

    educational_value: float = 0.3
    content_word: float = 0.3
    topic_word: float = 0.4
    text_match_cap: float = 0.5
    subject_bonus: float = 0.1
    content_type_bonus: float = 0.1
    difficulty_bonus: float = 0.05
    confidence: float = 0.1
    min_relevance: float = 0.1

    supporting_similarity: float = 0.7
    contradicting_similarity: float = 0.3
    valid_confidence: float = 0.6
    confirm_confidence: float = 0.7
    well_supported_count: int = 3
    strictness_floors: dict[Strictness, float] = Field(
        default_factory=lambda: {
            Strictness.LENIENT: 0.5,
            Strictness.MODERATE: 0.7,
            Strictness.STRICT: 0.9,
        }
    )


DEFAULT_MEMORY_POLICY = MemoryScoringPolicy()
DEFAULT_KNOWLEDGE_POLICY = KnowledgeScoringPolicy()


# =============================================================================
# Memory scoring
# =============================================================================

def quality_score(data: MemoryCreate, policy: MemoryScoringPolicy = DEFAULT_MEMORY_POLICY) -> float:
    """Heuristic informativeness of an interaction record."""
    interaction = data.interaction_data
    score = policy.quality_base

    if len(interaction.content) > policy.quality_min_content_length:
        score += policy.quality_content_length
    if interaction.complexity == Complexity.COMPLEX:
        score += policy.quality_complex
    if interaction.sentiment == Sentiment.POSITIVE:
        score += policy.quality_positive_sentiment
    if interaction.response:
        score += policy.quality_response
        if (interaction.confidence_score or 0.0) > policy.quality_response_confidence:
            score += policy.quality_confident_response
    if interaction.learning_objective:
        score += policy.quality_learning_objective
    if interaction.topic:
        score += policy.quality_topic
    if interaction.processing_time_ms is not None and interaction.processing_time_ms < policy.quality_fast_processing_ms:
        score += policy.quality_fast_processing
    if interaction.tokens_used is not None and interaction.tokens_used < policy.quality_low_tokens_limit:
        score += policy.quality_low_tokens

    return clamp(score)


def relevance_score(data: MemoryCreate, policy: MemoryScoringPolicy = DEFAULT_MEMORY_POLICY) -> float:
    """Situational relevance stored with a new memory."""
    score = policy.relevance_base
    score += policy.priority_weights.get(data.priority, 0.0)
    if data.interaction_data.content:
        score += policy.relevance_content
    if data.interaction_data.topic:
        score += policy.relevance_topic
    if data.tags:
        score += policy.relevance_tags
    score += policy.type_weights.get(data.memory_type, 0.0)
    return clamp(score)


def memory_similarity(a: Memory, b: Memory, policy: MemoryScoringPolicy = DEFAULT_MEMORY_POLICY) -> float:
    """Topic match, content word overlap and type match, weighted."""
    score = 0.0
    topic_a, topic_b = a.interaction_data.topic, b.interaction_data.topic
    if topic_a and topic_b and topic_a.lower() == topic_b.lower():
        score += policy.similarity_topic
    score += policy.similarity_content * jaccard(a.interaction_data.content, b.interaction_data.content)
    if a.memory_type == b.memory_type:
        score += policy.similarity_type
    return clamp(score)


def search_relevance(memory: Memory, query: str, policy: MemoryScoringPolicy = DEFAULT_MEMORY_POLICY) -> float:
    """Query-specific relevance of a memory."""
    query_words = words(query)
    interaction = memory.interaction_data
    content = interaction.content.lower()
    topic = (interaction.topic or "").lower()
    subject = (interaction.subject or "").lower()

    score = 0.0
    for word in query_words:
        if word in content:
            score += policy.search_content
        if topic and word in topic:
            score += policy.search_topic
        if subject and word in subject:
            score += policy.search_subject

    for tag in memory.tags:
        tag_lower = tag.lower()
        for word in query_words:
            if word in tag_lower:
                score += policy.search_tag

    score += memory.quality_score * policy.search_quality
    return clamp(score)


# =============================================================================
# Knowledge scoring
# =============================================================================

def knowledge_relevance(
    entry: KnowledgeEntry,
    query: str,
    filters: KnowledgeSearchFilters | None = None,
    policy: KnowledgeScoringPolicy = DEFAULT_KNOWLEDGE_POLICY,
) -> float:
    """Relevance of a knowledge entry to a query and its filters."""
    score = entry.educational_value * policy.educational_value

    content_words = words(entry.content)
    topics = [t.lower() for t in entry.topics]
    text_score = 0.0
    for word in words(query):
        if any(word in cw for cw in content_words):
            text_score += policy.content_word
        if any(word in topic for topic in topics):
            text_score += policy.topic_word
    score += min(policy.text_match_cap, text_score)

    if filters is not None:
        subjects = {s.lower() for s in filters.subjects}
        if entry.subject and entry.subject.lower() in subjects:
            score += policy.subject_bonus
        if entry.content_type in filters.content_types:
            score += policy.content_type_bonus
        if entry.difficulty in filters.difficulty:
            score += policy.difficulty_bonus

    score += entry.confidence * policy.confidence
    return clamp(score)
