# =============================================================================
# TF-IDF Reranker — lexical reordering of a large candidate pool
# =============================================================================
#
# Runs only when the pool has at least `rerank_min_candidates` (20) results;
# smaller pools keep their similarity order.
#
#   1. Term-frequency matrix over the pool's contents plus the query
#   2. IDF computed over the pool (smoothed: log((1 + n) / (1 + df)) + 1)
#   3. Cosine similarity of each document row against the query row
#   4. Min-max normalise to [0, 1], stable sort descending
#
# The score is written to metadata["rerank_score"]; `similarity` is kept so
# later stages still see the vector score. Any numeric failure returns the
# pool in similarity order.
# =============================================================================

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Sequence

import numpy as np

from dataroom_rag.agents.search import SearchResult
from dataroom_rag.config import Settings, get_settings

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return [t for t in _TERM_RE.findall(text.lower()) if len(t) > 1]


def tfidf_scores(query: str, contents: Sequence[str]) -> np.ndarray:
    """Min-max normalised cosine scores of ``contents`` against ``query``."""
    documents = [tokenize(c) for c in contents]
    query_terms = tokenize(query)

    vocabulary: dict[str, int] = {}
    for terms in [*documents, query_terms]:
        for term in terms:
            vocabulary.setdefault(term, len(vocabulary))
    if not vocabulary:
        return np.zeros(len(contents))

    tf = np.zeros((len(documents) + 1, len(vocabulary)))
    for row, terms in enumerate([*documents, query_terms]):
        for term in terms:
            tf[row, vocabulary[term]] += 1.0
        if terms:
            tf[row] /= len(terms)

    pool = tf[:-1]
    df = np.count_nonzero(pool > 0, axis=0)
    idf = np.log((1.0 + len(documents)) / (1.0 + df)) + 1.0
    weighted = tf * idf

    doc_matrix, query_vector = weighted[:-1], weighted[-1]
    norms = np.linalg.norm(doc_matrix, axis=1) * np.linalg.norm(query_vector)
    dots = doc_matrix @ query_vector
    cosine = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    low, high = cosine.min(), cosine.max()
    if high - low <= 0:
        return np.zeros_like(cosine) if high <= 0 else np.ones_like(cosine)
    return (cosine - low) / (high - low)


class TfidfReranker:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def should_rerank(self, results: Sequence[SearchResult]) -> bool:
        return len(results) >= self._settings.rerank_min_candidates

    def rerank(self, query: str, results: Sequence[SearchResult]) -> list[SearchResult]:
        by_similarity = sorted(results, key=lambda r: r.similarity, reverse=True)
        if not self.should_rerank(results):
            return by_similarity

        try:
            scores = tfidf_scores(query, [r.content for r in results])
        except (ValueError, FloatingPointError, MemoryError) as exc:
            logger.warning("TF-IDF rerank failed, keeping similarity order: %s", exc)
            return by_similarity

        scored = [
            dataclasses.replace(r, metadata={**r.metadata, "rerank_score": round(float(s), 4)})
            for r, s in zip(results, scores)
        ]
        order = sorted(range(len(scored)), key=lambda i: float(scores[i]), reverse=True)
        logger.info("TF-IDF reranked %d candidates", len(scored))
        return [scored[i] for i in order]
