"""
Student Profile Models

Raw activity records supplied by the identity/profile provider and the
ultra-compressed profile derived from them for context building.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from grounding.clock import utc_now


class LearningStyleType(str, Enum):
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    READING_WRITING = "reading_writing"


class SessionOutcome(str, Enum):
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    INTERRUPTED = "interrupted"


# =============================================================================
# Raw provider records
# =============================================================================

class StudySession(BaseModel):
    """One study session row from the activity log."""

    subject: str | None = None
    topic: str | None = None
    duration: float = Field(default=0.0, ge=0.0, description="Duration in seconds")
    completed: bool = False
    accuracy: float | None = Field(default=None, ge=0.0, le=1.0)
    difficulty: int | None = Field(default=None, ge=1, le=5)
    learning_objective: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class GamificationRecord(BaseModel):
    level: int = 1
    current_streak: int = 0
    total_points: int = 0


class LearningPreferences(BaseModel):
    learning_style: LearningStyleType = LearningStyleType.READING_WRITING
    preferred_difficulty: int | None = Field(default=None, ge=1, le=5)
    explanation_style: str | None = None
    question_frequency: str | None = None


class ConversationSummary(BaseModel):
    """Summary of a prior tutoring conversation."""

    conversation_id: str
    summary: str
    key_topics: list[str] = Field(default_factory=list)
    learning_objectives: list[str] = Field(default_factory=list)
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    duration: float = 0.0
    messages_count: int = 0
    subjects: list[str] = Field(default_factory=list)
    difficulty: int = Field(default=3, ge=1, le=5)
    outcome: SessionOutcome = SessionOutcome.IN_PROGRESS
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Derived profile
# =============================================================================

class StylePreferences(BaseModel):
    step_by_step: bool = True
    examples_first: bool = True
    abstract_concepts: bool = False
    practical_application: bool = True


class AdaptiveFactors(BaseModel):
    difficulty_ramp: str = "adaptive"
    explanation_depth: str = "adaptive"
    question_frequency: str = "medium"


class LearningStyle(BaseModel):
    type: LearningStyleType = LearningStyleType.READING_WRITING
    preferences: StylePreferences = Field(default_factory=StylePreferences)
    adaptive_factors: AdaptiveFactors = Field(default_factory=AdaptiveFactors)


class ComplexityLevel(BaseModel):
    current: int = Field(default=3, ge=1, le=5)
    preferred: int = Field(default=3, ge=1, le=5)
    adaptive_range: tuple[int, int] = (2, 4)


class StudyProgress(BaseModel):
    total_topics: int = 0
    completed_topics: int = 0
    mastery_level: float = Field(default=0.0, ge=0.0, le=100.0)
    accuracy: float = Field(default=0.0, ge=0.0, le=100.0)
    time_spent: float = 0.0
    last_activity: datetime | None = None
    improvement_rate: float = 0.0


class CompressedMetadata(BaseModel):
    """
    Summary numbers kept with the profile.

    The verbose fields are optional so the optimizer can drop them.
    """
    total_sessions: int = 0
    average_session_time: float | None = 0.0
    most_studied_subject: str = "Unknown"
    learning_velocity: float = 0.0
    attention_span: float | None = 0.0


class UltraCompressedProfile(BaseModel):
    """Compact learner profile embedded in every grounding context."""

    user_id: UUID
    learning_style: LearningStyle = Field(default_factory=LearningStyle)
    strong_subjects: list[str] = Field(default_factory=list)
    weak_subjects: list[str] = Field(default_factory=list)
    current_level: int = 1
    streak_days: int = 0
    total_points: int = 0
    preferred_complexity: ComplexityLevel = Field(default_factory=ComplexityLevel)
    recent_topics: list[str] = Field(default_factory=list)
    study_progress: StudyProgress = Field(default_factory=StudyProgress)
    learning_objectives: list[str] = Field(default_factory=list)
    last_session_summary: str = "No recent activity"
    compressed_metadata: CompressedMetadata = Field(default_factory=CompressedMetadata)
