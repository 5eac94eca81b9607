# =============================================================================
# LLM Output Schemas — Pydantic V2
# =============================================================================
#
# One model per structured prompt. The prompt registry (services/prompts.py)
# pairs each PromptId with exactly one of these, and generate_structured()
# validates the model's JSON against it. Anything that fails validation is
# a StructuredOutputError for that stage, never a half-filled object.
#
# Keys are snake_case; the prompt texts ask for exactly these names.
# =============================================================================

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

QueryType = Literal["abusive", "chitchat", "document_question"]
QueryIntent = Literal[
    "extraction",
    "summarization",
    "comparison",
    "concept_explanation",
    "analysis",
    "verification",
    "general_inquiry",
]
ComplexityLevel = Literal["low", "medium", "high"]
ContextSize = Literal["small", "medium", "large"]
StrategyName = Literal[
    "FastVectorSearch", "StandardVectorSearch", "ExpandedSearch", "PageQueryStrategy",
]
CompressionAction = Literal["preserve", "compress", "remove"]


class _LLMModel(BaseModel):
    """Ignore extra keys the model volunteers; validate the ones we need."""

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Unified query analysis
# ---------------------------------------------------------------------------


class Sanitization(_LLMModel):
    sanitized_query: str


class QueryClassification(_LLMModel):
    type: QueryType
    intent: QueryIntent
    response: str = ""
    requires_expansion: bool = False
    optimal_context_size: ContextSize = "medium"


class ComplexityAnalysis(_LLMModel):
    complexity_score: float = Field(ge=0.0, le=1.0)
    complexity_level: ComplexityLevel


class QueryExtraction(_LLMModel):
    page_numbers: list[int] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class QueryRewriting(_LLMModel):
    rewritten_queries: list[str] = Field(default_factory=list)
    hyde_answer: str = ""
    requires_hyde: bool = False


class SearchStrategyHint(_LLMModel):
    strategy: StrategyName
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ProcessingHints(_LLMModel):
    processing_strategy: Literal["precise", "comprehensive", "comparative", "analytical"] | None = None
    expansion_strategy: Literal["minimal", "moderate", "comprehensive"] | None = None
    context_window: Literal["focused", "balanced", "broad"] | None = None


class UnifiedQueryAnalysis(_LLMModel):
    sanitization: Sanitization
    query_classification: QueryClassification
    complexity_analysis: ComplexityAnalysis
    query_extraction: QueryExtraction = Field(default_factory=QueryExtraction)
    query_rewriting: QueryRewriting = Field(default_factory=QueryRewriting)
    search_strategy: SearchStrategyHint | None = None
    processing_hints: ProcessingHints = Field(default_factory=ProcessingHints)


# ---------------------------------------------------------------------------
# Relevance grading
# ---------------------------------------------------------------------------


class DocumentGrade(_LLMModel):
    relevance_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    is_relevant: bool
    suggested_weight: float = Field(default=0.0, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# RAPTOR compression phases
# ---------------------------------------------------------------------------


class RaptorDocumentSummary(_LLMModel):
    summary: str = Field(min_length=1)
    key_points: list[str] = Field(default_factory=list)
    relevance_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)


class RaptorNode(_LLMModel):
    title: str
    content: str
    relevance_score: float = Field(ge=0.0, le=1.0)
    compression_action: CompressionAction
    source_chunk_ids: list[str] = Field(default_factory=list)


class RaptorTree(_LLMModel):
    root_node: RaptorNode
    branches: list[RaptorNode] = Field(default_factory=list)
    compression_strategy: str
    estimated_compression_ratio: float = Field(ge=0.0, le=1.0)


class RaptorMultiLevelCompression(_LLMModel):
    compressed_content: str = Field(min_length=1)
    preserved_nodes: list[str] = Field(default_factory=list)
    compressed_nodes: list[str] = Field(default_factory=list)
    removed_nodes: list[str] = Field(default_factory=list)
    final_compression_ratio: float = Field(ge=0.0, le=1.0)
    information_retention: float = Field(ge=0.0, le=1.0)


class RaptorCategory(_LLMModel):
    title: str
    content: str
    relevance_score: float = Field(ge=0.0, le=1.0)
    source_documents: list[str] = Field(default_factory=list)


class RaptorHierarchicalSummary(_LLMModel):
    main_topic: str = ""
    categories: list[RaptorCategory] = Field(default_factory=list)
    overall_summary: str = ""
    key_insights: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
