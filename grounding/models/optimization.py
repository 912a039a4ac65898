"""
Context Optimization Models

Request, token budget and tradeoff report for forcing an assembled
context under a hard token limit.
"""

from enum import Enum

from pydantic import BaseModel, Field

from grounding.models.context import EnhancedContext


class OptimizationStrategy(str, Enum):
    """
    How the optimizer trades size against information quality.

    - QUALITY_PRESERVING: only shrink components over their allocation
    - SIZE_REDUCING: shrink knowledge, history and sources toward allocation
    - BALANCED: fixed per-component compression factors
    - PERFORMANCE_ORIENTED: shrink knowledge only
    """
    QUALITY_PRESERVING = "quality_preserving"
    SIZE_REDUCING = "size_reducing"
    BALANCED = "balanced"
    PERFORMANCE_ORIENTED = "performance_oriented"


class ContextComponent(str, Enum):
    PROFILE = "profile"
    KNOWLEDGE = "knowledge"
    MEMORY = "memory"
    SOURCES = "sources"
    HISTORY = "history"


class OptimizationRequest(BaseModel):
    """
    Request to optimize an already-built context.

    Fields are deliberately lenient; the optimizer validates them itself
    so a malformed request still yields a fallback result.
    """

    context: EnhancedContext | None = None
    token_limit: int = 0
    strategy: OptimizationStrategy | None = None
    preserve_quality: bool = True
    educational_priority: bool = False
    preserve_components: list[ContextComponent] = Field(default_factory=list)
    minimum_quality: float = Field(default=0.0, ge=0.0, le=1.0)
    hard_limit: bool = False


class TokenBudget(BaseModel):
    total: int
    allocated: dict[ContextComponent, int]
    remaining: int
    efficiency: float


class OptimizationTradeoff(BaseModel):
    component: ContextComponent
    original_size: int
    optimized_size: int
    information_loss: float = Field(..., ge=0.0, le=1.0)
    quality_impact: float = Field(..., ge=0.0, le=1.0)
    reason: str


class TokenReduction(BaseModel):
    original_tokens: int
    optimized_tokens: int
    reduction_ratio: float


class PreservedInformation(BaseModel):
    critical_facts: list[str] = Field(default_factory=list)
    learning_objectives: list[str] = Field(default_factory=list)
    key_preferences: list[str] = Field(default_factory=list)
    recent_progress: str = ""
    knowledge_gaps: list[str] = Field(default_factory=list)


class OptimizationResult(BaseModel):
    optimized_context: EnhancedContext | None
    token_reduction: TokenReduction
    quality_score: float = Field(..., ge=0.0, le=1.0)
    compression_ratio: float = Field(..., ge=0.0)
    strategy: OptimizationStrategy | None = None
    preserved_information: PreservedInformation = Field(default_factory=PreservedInformation)
    tradeoffs: list[OptimizationTradeoff] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    fallback: bool = False
