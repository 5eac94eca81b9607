# =============================================================================
# Prompt Registry — fixed prompt ids paired with typed prompt objects
# =============================================================================
#
# Every prompt the pipeline sends is declared here once. Structured prompts
# carry the pydantic schema their output must satisfy, so a call site can't
# pair a prompt with the wrong parser:
#
#   analysis = await UNIFIED_QUERY_ANALYSIS.generate(llm, query=q)
#   # -> UnifiedQueryAnalysis
#
# Templates use {{name}} placeholders. render() requires exactly the
# declared variables; a missing or unexpected one is a programming error
# and raises ValueError.
# =============================================================================

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from dataroom_rag.models.llm_outputs import (
    DocumentGrade,
    RaptorDocumentSummary,
    RaptorHierarchicalSummary,
    RaptorMultiLevelCompression,
    RaptorTree,
    UnifiedQueryAnalysis,
)
from dataroom_rag.services.llm import LLMProvider, generate_structured

M = TypeVar("M", bound=BaseModel)

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


class PromptId(str, enum.Enum):
    RAG_RESPONSE_SYSTEM = "rag-response-system"
    RAG_FALLBACK_RESPONSE = "rag-fallback-response"
    UNIFIED_QUERY_ANALYSIS = "unified-query-analysis"
    DOCUMENT_GRADING_SINGLE = "document-grading-single"
    RAPTOR_DOCUMENT_SUMMARY = "raptor-document-summary"
    RAPTOR_TREE_STRUCTURE = "raptor-tree-structure"
    RAPTOR_MULTI_LEVEL_COMPRESSION = "raptor-multi-level-compression"
    RAPTOR_HIERARCHICAL_SUMMARY = "raptor-hierarchical-summary"


def _render(prompt_id: PromptId, template: str, variables: tuple[str, ...], values: dict[str, Any]) -> str:
    missing = set(variables) - values.keys()
    unexpected = values.keys() - set(variables)
    if missing or unexpected:
        raise ValueError(
            f"Prompt {prompt_id.value}: missing={sorted(missing)} "
            f"unexpected={sorted(unexpected)}"
        )
    return _PLACEHOLDER_RE.sub(
        lambda m: str(values[m.group(1)]) if m.group(1) in values else m.group(0),
        template,
    )


@dataclass(frozen=True)
class TextPrompt:
    """A prompt whose output is free text (answers, fallbacks)."""

    id: PromptId
    template: str
    variables: tuple[str, ...]

    def render(self, **values: Any) -> str:
        return _render(self.id, self.template, self.variables, values)


@dataclass(frozen=True)
class StructuredPrompt(Generic[M]):
    """A prompt whose output is JSON validated against ``schema``."""

    id: PromptId
    template: str
    variables: tuple[str, ...]
    schema: type[M]
    max_tokens: int | None = None

    def render(self, **values: Any) -> str:
        return _render(self.id, self.template, self.variables, values)

    async def generate(self, llm: LLMProvider, **values: Any) -> M:
        return await generate_structured(
            llm,
            self.schema,
            self.render(**values),
            system=_JSON_SYSTEM,
            temperature=0.0,
            max_tokens=self.max_tokens,
        )


_JSON_SYSTEM = (
    "You are a precise document analysis component. Respond with a single "
    "JSON object that follows the requested format exactly. Do not wrap it "
    "in markdown and do not add commentary."
)


# ---------------------------------------------------------------------------
# Answer generation
# ---------------------------------------------------------------------------

RAG_RESPONSE_SYSTEM = TextPrompt(
    id=PromptId.RAG_RESPONSE_SYSTEM,
    variables=("context", "query"),
    template="""You are a document analysis assistant. Answer questions using ONLY the provided context.

## Instructions:
1. **Use related information**: If the context contains related information (even if not an exact match), provide it and explain the relationship
2. **Cite sources**: Reference the numbered sources, e.g. [1], [2], for every claim
3. **Be helpful**: Provide the available information rather than saying nothing

## Rules:
- Look for synonyms, abbreviations and related concepts in the context
- Information may be in tables, lists, paragraphs or different sections
- If several sections relate to the question, use all of them
- When asked to list or show something, extract the exact data from the context
- Only say the information is missing if the context is empty or unrelated

## Context:
{{context}}

## Question:
{{query}}

## Response:
Provide a helpful answer based on the context above.""",
)

RAG_FALLBACK_RESPONSE = TextPrompt(
    id=PromptId.RAG_FALLBACK_RESPONSE,
    variables=("query",),
    template="""You asked: "{{query}}"

Unfortunately, I couldn't find any relevant information in the provided documents to answer your question. This could be because:

1. The information isn't present in the uploaded documents
2. The documents haven't been fully processed yet
3. The question is outside the scope of the available content

Please try rephrasing your question or asking about specific topics covered by your documents.""",
)


# ---------------------------------------------------------------------------
# Query analysis
# ---------------------------------------------------------------------------

UNIFIED_QUERY_ANALYSIS: StructuredPrompt[UnifiedQueryAnalysis] = StructuredPrompt(
    id=PromptId.UNIFIED_QUERY_ANALYSIS,
    variables=("query",),
    schema=UnifiedQueryAnalysis,
    max_tokens=1200,
    template="""Analyze this query against a collection of documents and decide how to handle it.

QUERY: "{{query}}"

## PRIMARY DECISION
A) abusive / chitchat: write a short, varied redirect (under 20 words) that acknowledges the user's words and steers them to questions about their documents.
B) document_question: analyze it for retrieval.

## ANALYSIS TASKS
1. Classification: type (abusive | chitchat | document_question) and intent (extraction | summarization | comparison | concept_explanation | analysis | verification | general_inquiry).
2. Complexity: a score from 0.0 (simple fact lookup) to 1.0 (multi-step analysis) and a level (low | medium | high).
3. Extraction: page numbers explicitly mentioned, and the important keywords.
4. Rewriting: alternative phrasings (synonyms, related concepts, broader context), a hypothetical answer for HyDE, and whether HyDE would help.
5. Strategy: FastVectorSearch (simple direct lookups), StandardVectorSearch (typical questions), ExpandedSearch (complex, multi-perspective questions) or PageQueryStrategy (explicit page references).

## OUTPUT FORMAT
{
  "sanitization": {"sanitized_query": "cleaned version of the query"},
  "query_classification": {
    "type": "abusive | chitchat | document_question",
    "intent": "extraction | summarization | comparison | concept_explanation | analysis | verification | general_inquiry",
    "response": "redirect text for abusive/chitchat, otherwise empty",
    "requires_expansion": true,
    "optimal_context_size": "small | medium | large"
  },
  "complexity_analysis": {"complexity_score": 0.0, "complexity_level": "low | medium | high"},
  "query_extraction": {"page_numbers": [], "keywords": []},
  "query_rewriting": {"rewritten_queries": [], "hyde_answer": "", "requires_hyde": false},
  "search_strategy": {"strategy": "FastVectorSearch | StandardVectorSearch | ExpandedSearch | PageQueryStrategy", "confidence": 0.0, "reasoning": "one sentence"},
  "processing_hints": {
    "processing_strategy": "precise | comprehensive | comparative | analytical",
    "expansion_strategy": "minimal | moderate | comprehensive",
    "context_window": "focused | balanced | broad"
  }
}""",
)


# ---------------------------------------------------------------------------
# Relevance grading
# ---------------------------------------------------------------------------

DOCUMENT_GRADING_SINGLE: StructuredPrompt[DocumentGrade] = StructuredPrompt(
    id=PromptId.DOCUMENT_GRADING_SINGLE,
    variables=("query", "content"),
    schema=DocumentGrade,
    max_tokens=150,
    template="""Grade how relevant this document excerpt is to the question.

QUESTION: "{{query}}"

EXCERPT:
{{content}}

Score partial and indirect relevance generously: an excerpt that contains related facts, definitions or context for the question is relevant even if it does not answer it completely.

## OUTPUT FORMAT
{"relevance_score": 0.0, "confidence": 0.0, "is_relevant": true, "suggested_weight": 0.0}""",
)


# ---------------------------------------------------------------------------
# RAPTOR compression
# ---------------------------------------------------------------------------

RAPTOR_DOCUMENT_SUMMARY: StructuredPrompt[RaptorDocumentSummary] = StructuredPrompt(
    id=PromptId.RAPTOR_DOCUMENT_SUMMARY,
    variables=("query", "content", "metadata"),
    schema=RaptorDocumentSummary,
    max_tokens=800,
    template="""Summarize the excerpts below from a single document, focusing on what matters for the question. Keep figures, names and dates exact.

QUESTION: "{{query}}"

DOCUMENT METADATA:
{{metadata}}

EXCERPTS:
{{content}}

## OUTPUT FORMAT
{"summary": "focused summary", "key_points": ["..."], "relevance_score": 0.0, "confidence": 0.0}""",
)

RAPTOR_TREE_STRUCTURE: StructuredPrompt[RaptorTree] = StructuredPrompt(
    id=PromptId.RAPTOR_TREE_STRUCTURE,
    variables=("query", "content"),
    schema=RaptorTree,
    max_tokens=1200,
    template="""Organize these document summaries into a tree for answering the question. The root node captures the overall answer; each branch is one theme. Mark each node "preserve" (essential), "compress" (useful but shortenable) or "remove" (irrelevant).

QUESTION: "{{query}}"

SUMMARIES:
{{content}}

## OUTPUT FORMAT
{
  "root_node": {"title": "", "content": "", "relevance_score": 0.0, "compression_action": "preserve", "source_chunk_ids": []},
  "branches": [{"title": "", "content": "", "relevance_score": 0.0, "compression_action": "compress", "source_chunk_ids": []}],
  "compression_strategy": "one sentence",
  "estimated_compression_ratio": 0.0
}""",
)

RAPTOR_MULTI_LEVEL_COMPRESSION: StructuredPrompt[RaptorMultiLevelCompression] = StructuredPrompt(
    id=PromptId.RAPTOR_MULTI_LEVEL_COMPRESSION,
    variables=("query", "tree", "compression_level"),
    schema=RaptorMultiLevelCompression,
    max_tokens=1500,
    template="""Compress this content tree into a single passage for answering the question. Compression level {{compression_level}} of 3: level 1 keeps most detail, level 3 keeps only what is essential. Keep "preserve" nodes intact, shorten "compress" nodes and drop "remove" nodes.

QUESTION: "{{query}}"

TREE:
{{tree}}

## OUTPUT FORMAT
{
  "compressed_content": "the compressed passage",
  "preserved_nodes": [],
  "compressed_nodes": [],
  "removed_nodes": [],
  "final_compression_ratio": 0.0,
  "information_retention": 0.0
}""",
)

RAPTOR_HIERARCHICAL_SUMMARY: StructuredPrompt[RaptorHierarchicalSummary] = StructuredPrompt(
    id=PromptId.RAPTOR_HIERARCHICAL_SUMMARY,
    variables=("query", "documents"),
    schema=RaptorHierarchicalSummary,
    max_tokens=1200,
    template="""Build a hierarchical overview of these document summaries for the question: a main topic, thematic categories with their source documents, an overall summary and the key insights.

QUESTION: "{{query}}"

DOCUMENTS:
{{documents}}

## OUTPUT FORMAT
{
  "main_topic": "",
  "categories": [{"title": "", "content": "", "relevance_score": 0.0, "source_documents": []}],
  "overall_summary": "",
  "key_insights": [],
  "confidence": 0.0
}""",
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROMPTS: dict[PromptId, TextPrompt | StructuredPrompt[Any]] = {
    prompt.id: prompt
    for prompt in (
        RAG_RESPONSE_SYSTEM,
        RAG_FALLBACK_RESPONSE,
        UNIFIED_QUERY_ANALYSIS,
        DOCUMENT_GRADING_SINGLE,
        RAPTOR_DOCUMENT_SUMMARY,
        RAPTOR_TREE_STRUCTURE,
        RAPTOR_MULTI_LEVEL_COMPRESSION,
        RAPTOR_HIERARCHICAL_SUMMARY,
    )
}


def get_prompt(prompt_id: PromptId) -> TextPrompt | StructuredPrompt[Any]:
    return PROMPTS[prompt_id]
