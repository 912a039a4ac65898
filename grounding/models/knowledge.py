"""
Knowledge Base Models

Verified educational facts, the sources that back them, and the
relationships stored between facts.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from grounding.clock import utc_now


class SourceType(str, Enum):
    TEXTBOOK = "textbook"
    PAPER = "paper"
    WEBSITE = "website"
    VIDEO = "video"
    COURSE = "course"
    EXPERT = "expert"
    OTHER = "other"


class VerificationStatus(str, Enum):
    """Verification state shared by sources and entries."""
    PENDING = "pending"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    REJECTED = "rejected"


class ContentType(str, Enum):
    FACT = "fact"
    CONCEPT = "concept"
    PROCEDURE = "procedure"
    EXAMPLE = "example"
    REFERENCE = "reference"


class RelationshipType(str, Enum):
    """How one stored fact relates to another."""
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    ELABORATES = "elaborates"
    PREREQUISITE = "prerequisite"
    CONSEQUENCE = "consequence"


class SourceCreate(BaseModel):
    """Schema for registering an educational source."""

    title: str = Field(..., min_length=1)
    author: str | None = None
    url: str | None = None
    source_type: SourceType = SourceType.OTHER
    reliability: float = Field(default=0.5, ge=0.0, le=1.0)
    verification_status: VerificationStatus = VerificationStatus.PENDING
    citations: list[str] = Field(default_factory=list)
    publication_date: datetime | None = None
    subject: str | None = None
    topics: list[str] = Field(default_factory=list)
    content: str = ""
    educational_relevance: float = Field(default=0.5, ge=0.0, le=1.0)


class EducationalSource(SourceCreate):
    """Stored educational source."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"from_attributes": True}


class KnowledgeEntryCreate(BaseModel):
    """Schema for adding a knowledge entry."""

    source_id: UUID = Field(..., description="Backing educational source")
    content: str = Field(..., min_length=1)
    content_type: ContentType = ContentType.FACT
    subject: str | None = None
    topics: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    educational_value: float = Field(default=0.5, ge=0.0, le=1.0)
    difficulty: int = Field(default=3, ge=1, le=5)
    related_concepts: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    learning_objectives: list[str] = Field(default_factory=list)
    verification_status: VerificationStatus = VerificationStatus.PENDING


class KnowledgeEntry(KnowledgeEntryCreate):
    """Stored knowledge entry."""

    id: UUID = Field(default_factory=uuid4)
    last_verified: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"from_attributes": True}


class FactRelationship(BaseModel):
    """Stored edge between two knowledge entries."""

    id: UUID = Field(default_factory=uuid4)
    source_fact_id: UUID
    target_fact_id: UUID
    relationship_type: RelationshipType
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)
