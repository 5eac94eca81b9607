# =============================================================================
# RAG Pipeline — LangGraph assembly of the end-to-end query flow
# =============================================================================
#
# GRAPH TOPOLOGY:
#
#   START ──▶ resolve_access ──▶ analyze ──▶ check_pages ──▶ select_strategy
#                  │                │             │                │
#                  ▼                ▼             ▼                ▼
#                 END              END           END            retrieve ──▶ END
#             (no scope)      (chitchat /   (page out of           │      (no results)
#                              abusive)        range)              ▼
#                                                           prepare_context ──▶ END
#                                                                  │        (streaming)
#                                                                  ▼
#                                                              generate ──▶ END
#
# A node that settles the answer early writes `answer` + `outcome`; the
# router after it then goes straight to END.
#
# PREPARE CONTEXT:
#   Fast path (FastVectorSearch, PageQueryStrategy): results used directly
#   at confidence 0.8, no rerank / compression / grading.
#   Otherwise: TF-IDF rerank ∥ compression, then LLM grading of the
#   reranked list. Grading failure → reranked list; compression failure →
#   numbered uncompressed context.
#
# The whole graph runs under the request timeout (60s) and an optional
# cancel event. Timeout → TIMEOUT_MESSAGE; cancel → RequestCancelledError.
# Stage failures degrade, they never fail the request.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any

from langgraph.graph import END, START, StateGraph
from sqlalchemy.exc import SQLAlchemyError
from typing_extensions import TypedDict

from dataroom_rag.agents.compression import CompressedContext, ContextCompressor
from dataroom_rag.agents.grading import DocumentGrader, GradedDocument
from dataroom_rag.agents.patterns import assess_complexity
from dataroom_rag.agents.query_analyzer import (
    QueryAnalysisResult,
    QueryAnalyzer,
    extract_pages,
    sanitize_query,
)
from dataroom_rag.agents.reranker import TfidfReranker
from dataroom_rag.agents.responder import (
    ResponseGenerator,
    SourceReference,
    format_context,
    format_sources,
)
from dataroom_rag.agents.search import (
    SearchOrchestrator,
    SearchResult,
    build_queries,
    search_config_for,
)
from dataroom_rag.agents.strategy import SearchStrategy, StrategySelection, select_strategy
from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import (
    CHITCHAT_DEFAULT_MESSAGE,
    FALLBACK_MESSAGE,
    TIMEOUT_MESSAGE,
    DocumentAccessError,
    PageOutOfRangeError,
    QueryValidationError,
    RAGError,
    RequestCancelledError,
)
from dataroom_rag.models.requests import QueryRequest
from dataroom_rag.services.access import (
    AccessibleDocument,
    DocumentAccessResolver,
    resolve_indexed_documents,
)
from dataroom_rag.services.chat_store import ChatMessage, SessionSink
from dataroom_rag.services.chunk_store import ChunkStore
from dataroom_rag.services.tokenizer import word_count

logger = logging.getLogger(__name__)

_FAST_PATH_CONFIDENCE = 0.8
_FAST_PATH_STRATEGIES = (SearchStrategy.FAST, SearchStrategy.PAGE_QUERY)


class Outcome(str, enum.Enum):
    ANSWERED = "answered"
    NO_RESULTS = "no_results"
    GENERATION_FAILED = "generation_failed"
    CHITCHAT = "chitchat"
    ACCESS_DENIED = "access_denied"
    PAGE_OUT_OF_RANGE = "page_out_of_range"
    TIMEOUT = "timeout"


def _merge_timings(left: dict[str, float], right: dict[str, float]) -> dict[str, float]:
    return {**(left or {}), **(right or {})}


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class PipelineState(TypedDict, total=False):
    """
    State that flows through the graph.

    total=False so nodes only return the keys they update; `timings` is
    merged across nodes instead of overwritten.
    """

    # --- Input (set by caller) ---
    request: QueryRequest
    streaming: bool

    # --- Intermediate (set by nodes) ---
    documents: list[AccessibleDocument]
    analysis: QueryAnalysisResult | None
    pages: list[int]
    selection: StrategySelection
    results: list[SearchResult]
    used_results: list[SearchResult]
    compression: CompressedContext | None
    context: str

    # --- Output ---
    answer: str
    outcome: Outcome
    sources: list[SourceReference]
    timings: Annotated[dict[str, float], _merge_timings]


@dataclass
class PipelineResult:
    answer: str
    outcome: Outcome
    sources: list[SourceReference] = field(default_factory=list)
    strategy: str | None = None
    strategy_confidence: float | None = None
    compression_strategy: str | None = None
    query_type: str | None = None
    pages: list[int] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    def metadata(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "strategy": self.strategy,
            "strategy_confidence": self.strategy_confidence,
            "compression_strategy": self.compression_strategy,
            "query_type": self.query_type,
            "pages": self.pages,
            "timings_ms": self.timings,
            "elapsed_ms": self.elapsed_ms,
            "sources": [s.to_dict() for s in self.sources],
        }


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)


def _continue_or_end(next_node: str) -> Callable[[PipelineState], str]:
    def _route(state: PipelineState) -> str:
        return END if "answer" in state else next_node
    return _route


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class RAGPipeline:
    """
    One question in, one grounded answer out.

    The graph is compiled once per pipeline; the container builds one
    pipeline per process.
    """

    def __init__(
        self,
        *,
        access: DocumentAccessResolver,
        analyzer: QueryAnalyzer,
        search: SearchOrchestrator,
        chunk_store: ChunkStore,
        reranker: TfidfReranker,
        compressor: ContextCompressor,
        grader: DocumentGrader,
        responder: ResponseGenerator,
        sink: SessionSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._access = access
        self._analyzer = analyzer
        self._search = search
        self._chunk_store = chunk_store
        self._reranker = reranker
        self._compressor = compressor
        self._grader = grader
        self._responder = responder
        self._sink = sink
        self._settings = settings or get_settings()
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(PipelineState)
        builder.add_node("resolve_access", self._resolve_access)
        builder.add_node("analyze", self._analyze)
        builder.add_node("check_pages", self._check_pages)
        builder.add_node("select_strategy", self._select_strategy)
        builder.add_node("retrieve", self._retrieve)
        builder.add_node("prepare_context", self._prepare_context)
        builder.add_node("generate", self._generate)

        builder.add_edge(START, "resolve_access")
        builder.add_conditional_edges("resolve_access", _continue_or_end("analyze"))
        builder.add_conditional_edges("analyze", _continue_or_end("check_pages"))
        builder.add_conditional_edges("check_pages", _continue_or_end("select_strategy"))
        builder.add_edge("select_strategy", "retrieve")
        builder.add_conditional_edges("retrieve", _continue_or_end("prepare_context"))
        builder.add_conditional_edges(
            "prepare_context",
            lambda state: END if state.get("streaming") or "answer" in state else "generate",
        )
        builder.add_edge("generate", END)
        return builder.compile()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(
        self,
        request: QueryRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """
        Answer ``request`` end to end.

        Raises:
            RequestCancelledError: ``cancel_event`` was set before completion.
            QueryValidationError: The query is empty once sanitised.
        """
        started = time.perf_counter()
        await self._push(request, "user", request.query)

        try:
            state = await self._invoke(request, streaming=False, cancel_event=cancel_event)
        except asyncio.TimeoutError:
            logger.warning("Request timed out after %.0fs", self._settings.request_timeout_seconds)
            result = PipelineResult(answer=TIMEOUT_MESSAGE, outcome=Outcome.TIMEOUT)
        else:
            result = self._to_result(state)

        result.elapsed_ms = _elapsed_ms(started)
        logger.info(
            "Pipeline complete: outcome=%s strategy=%s sources=%d elapsed=%.0fms",
            result.outcome.value, result.strategy, len(result.sources), result.elapsed_ms,
        )
        await self._push(request, "assistant", result.answer, result.metadata())
        return result

    async def stream_answer(
        self,
        request: QueryRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """
        Same flow as ``run`` but yields the answer as it is generated.

        Early outcomes (access, chitchat, pages, no results, timeout) are
        yielded as a single chunk.
        """
        started = time.perf_counter()
        await self._push(request, "user", request.query)

        try:
            state = await self._invoke(request, streaming=True, cancel_event=cancel_event)
        except asyncio.TimeoutError:
            yield TIMEOUT_MESSAGE
            result = PipelineResult(answer=TIMEOUT_MESSAGE, outcome=Outcome.TIMEOUT)
            result.elapsed_ms = _elapsed_ms(started)
            await self._push(request, "assistant", result.answer, result.metadata())
            return

        if "answer" in state:
            yield state["answer"]
            result = self._to_result(state)
        else:
            parts: list[str] = []
            outcome = Outcome.ANSWERED
            try:
                async for delta in self._responder.stream(request.query, state.get("context", "")):
                    if cancel_event is not None and cancel_event.is_set():
                        raise RequestCancelledError("Request cancelled by the client")
                    parts.append(delta)
                    yield delta
            except RequestCancelledError:
                raise
            except RAGError as exc:
                logger.warning("Streaming generation failed: %s", exc.message)
                outcome = Outcome.GENERATION_FAILED
                if not parts:
                    parts.append(FALLBACK_MESSAGE)
                    yield FALLBACK_MESSAGE
            result = self._to_result({**state, "answer": "".join(parts), "outcome": outcome})

        result.elapsed_ms = _elapsed_ms(started)
        await self._push(request, "assistant", result.answer, result.metadata())

    async def _invoke(
        self,
        request: QueryRequest,
        *,
        streaming: bool,
        cancel_event: asyncio.Event | None,
    ) -> PipelineState:
        initial: PipelineState = {"request": request, "streaming": streaming, "timings": {}}
        logger.info(
            "Invoking pipeline: dataroom=%s query='%s' scope=%d",
            request.dataroom_id, request.query[:80], len(request.requested_document_ids),
        )
        task = asyncio.ensure_future(asyncio.wait_for(
            self._graph.ainvoke(initial), timeout=self._settings.request_timeout_seconds,
        ))
        if cancel_event is None:
            return await task

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task.cancelled() or not task.done():
            logger.info("Request cancelled for dataroom %s", request.dataroom_id)
            raise RequestCancelledError("Request cancelled by the client")
        return task.result()

    # -------------------------------------------------------------------------
    # Node Functions
    # -------------------------------------------------------------------------

    async def _resolve_access(self, state: PipelineState) -> dict:
        start = time.perf_counter()
        request = state["request"]
        accessible = await self._access.accessible_documents(request.dataroom_id, request.viewer_id)
        try:
            documents = resolve_indexed_documents(accessible, request.requested_document_ids)
        except DocumentAccessError as exc:
            logger.info("Access check ended the request: %s", exc.user_message)
            return {
                "answer": exc.user_message,
                "outcome": Outcome.ACCESS_DENIED,
                "timings": {"access": _elapsed_ms(start)},
            }
        return {"documents": documents, "timings": {"access": _elapsed_ms(start)}}

    async def _analyze(self, state: PipelineState) -> dict:
        start = time.perf_counter()
        query = state["request"].query
        try:
            analysis: QueryAnalysisResult | None = await self._analyzer.analyze(query)
        except QueryValidationError:
            raise
        except RAGError as exc:
            logger.warning("Query analysis failed, continuing without it: %s", exc.message)
            analysis = None

        update: dict[str, Any] = {"analysis": analysis, "timings": {"analysis": _elapsed_ms(start)}}
        if analysis is not None and not analysis.is_document_question:
            logger.info("Query classified as %s, skipping retrieval", analysis.query_type)
            update["answer"] = analysis.response or CHITCHAT_DEFAULT_MESSAGE
            update["outcome"] = Outcome.CHITCHAT
            return update

        update["pages"] = analysis.pages if analysis is not None else extract_pages(sanitize_query(query))
        return update

    async def _check_pages(self, state: PipelineState) -> dict:
        pages = state.get("pages") or []
        if not pages:
            return {"timings": {}}

        start = time.perf_counter()
        documents = state["documents"]
        known = [d.page_count for d in documents if d.page_count]
        if known:
            page_count = max(known)
        else:
            page_count = await self._chunk_store.max_page(
                state["request"].dataroom_id, [d.id for d in documents],
            )

        out_of_range = [p for p in pages if page_count and p > page_count]
        if out_of_range:
            error = PageOutOfRangeError(out_of_range, page_count)
            logger.info("Pages %s out of range (page_count=%d)", out_of_range, page_count)
            return {
                "answer": error.message,
                "outcome": Outcome.PAGE_OUT_OF_RANGE,
                "timings": {"page_check": _elapsed_ms(start)},
            }
        return {"timings": {"page_check": _elapsed_ms(start)}}

    async def _select_strategy(self, state: PipelineState) -> dict:
        query = state["request"].query
        analysis = state.get("analysis")
        selection = select_strategy(
            analysis,
            len(state["documents"]),
            query_words=word_count(query),
            complexity_score=assess_complexity(query)[0] if analysis is None else 0.0,
            pages=state.get("pages"),
            settings=self._settings,
        )
        logger.info(
            "Selected %s (confidence=%.2f, %s)",
            selection.strategy.value, selection.confidence, selection.reason,
        )
        return {"selection": selection}

    async def _retrieve(self, state: PipelineState) -> dict:
        start = time.perf_counter()
        request = state["request"]
        analysis = state.get("analysis")
        selection = state["selection"]
        document_ids = [d.id for d in state["documents"]]

        if selection.strategy == SearchStrategy.PAGE_QUERY:
            results = await self._search.page_query(
                request.dataroom_id, document_ids, state.get("pages") or [],
            )
        else:
            config = search_config_for(selection.strategy, self._settings)
            query = analysis.sanitized_query if analysis is not None else request.query
            results = await self._search.search(
                build_queries(query, analysis, config),
                request.dataroom_id,
                document_ids,
                config,
            )

        timings = {"retrieval": _elapsed_ms(start)}
        if not results:
            logger.info("No results for query; returning fallback response")
            return {
                "results": [],
                "answer": self._responder.fallback_response(request.query),
                "outcome": Outcome.NO_RESULTS,
                "timings": timings,
            }
        return {"results": results, "timings": timings}

    async def _prepare_context(self, state: PipelineState) -> dict:
        start = time.perf_counter()
        query = state["request"].query
        analysis = state.get("analysis")
        results = state["results"]

        if state["selection"].strategy in _FAST_PATH_STRATEGIES:
            used = [
                GradedDocument.from_result(
                    r, r.similarity or _FAST_PATH_CONFIDENCE,
                    _FAST_PATH_CONFIDENCE, True, _FAST_PATH_CONFIDENCE,
                )
                for r in results
            ]
            return {
                "used_results": used,
                "compression": None,
                "context": format_context(used),
                "sources": format_sources(used),
                "timings": {"context": _elapsed_ms(start)},
            }

        reranked, compressed = await asyncio.gather(
            asyncio.to_thread(self._reranker.rerank, query, results),
            self._compress(results, query, analysis),
        )

        try:
            outcome = await self._grader.grade(
                query, reranked, analysis.complexity_level if analysis is not None else None,
            )
        except RAGError as exc:
            logger.warning("Grading failed, using reranked order: %s", exc.message)
            used: list[SearchResult] = list(reranked)
        else:
            if not outcome.has_relevant_documents:
                logger.info("Grading kept no documents; returning fallback response")
                return {
                    "used_results": [],
                    "answer": self._responder.fallback_response(query),
                    "outcome": Outcome.NO_RESULTS,
                    "timings": {"context": _elapsed_ms(start)},
                }
            used = list(outcome.documents)

        context = compressed.content if compressed is not None and compressed.content else format_context(used)
        return {
            "used_results": used,
            "compression": compressed,
            "context": context,
            "sources": format_sources(used),
            "timings": {"context": _elapsed_ms(start)},
        }

    async def _generate(self, state: PipelineState) -> dict:
        start = time.perf_counter()
        query = state["request"].query
        try:
            answer = await self._responder.generate(query, state["context"])
        except RAGError as exc:
            logger.warning("Answer generation failed: %s", exc.message)
            return {
                "answer": FALLBACK_MESSAGE,
                "outcome": Outcome.GENERATION_FAILED,
                "timings": {"generation": _elapsed_ms(start)},
            }
        return {
            "answer": answer,
            "outcome": Outcome.ANSWERED,
            "timings": {"generation": _elapsed_ms(start)},
        }

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _compress(
        self,
        results: list[SearchResult],
        query: str,
        analysis: QueryAnalysisResult | None,
    ) -> CompressedContext | None:
        try:
            return await self._compressor.compress(results, query, complexity=analysis)
        except RAGError as exc:
            logger.warning("Compression failed, using uncompressed context: %s", exc.message)
            return None

    def _to_result(self, state: PipelineState) -> PipelineResult:
        selection = state.get("selection")
        analysis = state.get("analysis")
        compression = state.get("compression")
        return PipelineResult(
            answer=state.get("answer", FALLBACK_MESSAGE),
            outcome=state.get("outcome", Outcome.ANSWERED),
            sources=state.get("sources", []),
            strategy=selection.strategy.value if selection else None,
            strategy_confidence=selection.confidence if selection else None,
            compression_strategy=compression.strategy.value if compression else None,
            query_type=analysis.query_type if analysis else None,
            pages=list(state.get("pages") or []),
            timings=dict(state.get("timings") or {}),
        )

    async def _push(
        self,
        request: QueryRequest,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self._sink is None or not request.session_id:
            return
        try:
            await self._sink.push(ChatMessage(
                session_id=request.session_id,
                dataroom_id=request.dataroom_id,
                viewer_id=request.viewer_id,
                role=role,
                content=content,
                metadata=metadata or {},
            ))
        except SQLAlchemyError:
            logger.exception("Failed to store %s message for session %s", role, request.session_id)
