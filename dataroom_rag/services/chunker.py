# =============================================================================
# Markdown-Aware Document Chunker — tiktoken
# =============================================================================
#
# Splits a document's extracted markdown into header-bounded, token-budgeted
# chunks and attributes each chunk to the page it most likely came from.
#
# ALGORITHM:
# 1. Protect code fences, tables, lists, block quotes, and horizontal rules
#    behind opaque placeholders so no later split can cut through them.
# 2. Score document complexity → target size / overlap
#    (low 1000/100, medium 800/150, high 600/200 tokens; bounded by min/max).
# 3. Segment by markdown, HTML, and setext headers, tracking a hierarchy
#    stack (a level-N header clears recorded levels ≥ N). Text before the
#    first header, or a document with no headers, is "Introduction".
# 4. Oversized segments are split by paragraph, then by a sliding token
#    window, carrying the overlap. Undersized segments merge into the
#    previous chunk, or are flagged small and merged forward later.
# 5. Restore placeholders.
# 6. Page attribution by lexical overlap against the per-page text.
# 7. Final pass: drop duplicates, merge small chunks forward, drop empty
#    chunks, renumber contiguously.
#
# The whole pipeline is deterministic: identical input text yields
# identical chunk boundaries and ids ("{document_id}_chunk_{index}").
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.services.page_ranges import create_page_ranges
from dataroom_rag.services.tokenizer import (
    _get_encoder,
    clean_markdown,
    content_hash,
    count_tokens,
    has_meaningful_content,
)

logger = logging.getLogger(__name__)

PAGE_BREAK = "---PAGE_BREAK---"
DEFAULT_SECTION = "Introduction"

# Sizing per complexity level: (target tokens, overlap tokens)
CHUNK_SIZING: dict[str, tuple[int, int]] = {
    "low": (1000, 100),
    "medium": (800, 150),
    "high": (600, 200),
}

_PLACEHOLDER_RE = re.compile("\ue000(\\d+)\ue001")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_TABLE_LINE_RE = re.compile(r"^\s*\|.*\|\s*$")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S")
_QUOTE_RE = re.compile(r"^\s*>")
_HR_RE = re.compile(r"^\s*([-*_])(?:\s*\1){2,}\s*$")

_MD_HEADER_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_HTML_HEADER_RE = re.compile(r"<h([1-6])[^>]*>(.+?)</h[1-6]>", re.IGNORECASE)
_SETEXT_H1_RE = re.compile(r"^={3,}\s*$")
_SETEXT_H2_RE = re.compile(r"^-{3,}\s*$")
_HTML_TAG_RE = re.compile(r"<[^>]+>")

_TECH_TERM_RE = re.compile(r"\b[A-Z]{2,}(?:\.[A-Z]{2,})*\b")
_TABLE_ROW_RE = re.compile(r"\|.*\|")
_LIST_RE = re.compile(r"^[\s]*[-*+]\s+", re.MULTILINE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_SPECIAL_CHAR_RE = re.compile(r"[{}\[\]()<>@#$%^&*+=|\\~`]")
_NUMBER_RE = re.compile(r"\b\d+[\d,]*\b")
_CODE_FENCE_COUNT_RE = re.compile(r"^\s*```", re.MULTILINE)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Chunk:
    """
    A finalized chunk, ready for embedding and storage.

    ``page_ranges`` holds range strings ("5", "3-4"); every page they imply
    lies within the source document's page count.
    """

    id: str
    content: str
    document_id: str
    dataroom_id: str
    chunk_index: int
    content_hash: str
    token_count: int
    page_ranges: list[str] = field(default_factory=lambda: ["1"])
    section_header: str = DEFAULT_SECTION
    header_hierarchy: list[str] = field(default_factory=list)
    is_small_chunk: bool = False
    document_name: str = ""
    content_type: str = ""

    def to_metadata(self) -> dict[str, Any]:
        """Flat payload stored alongside the vector."""
        return {
            "document_id": self.document_id,
            "dataroom_id": self.dataroom_id,
            "document_name": self.document_name,
            "content_type": self.content_type,
            "chunk_index": self.chunk_index,
            "content_hash": self.content_hash,
            "token_count": self.token_count,
            "page_ranges": list(self.page_ranges),
            "section_header": self.section_header,
            "header_hierarchy": list(self.header_hierarchy),
            "is_small_chunk": self.is_small_chunk,
        }


@dataclass
class ComplexityProfile:
    level: str  # "low" | "medium" | "high"
    score: int
    factors: dict[str, int]
    chunk_size: int
    overlap: int


@dataclass
class _Segment:
    content: str  # protected text (placeholders intact)
    header: str
    hierarchy: list[str]


@dataclass
class _Draft:
    content: str
    header: str
    hierarchy: list[str]
    tokens: int
    is_small: bool = False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class DocumentChunker:
    """Stateless apart from settings; safe to share across documents."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def chunk(
        self,
        text: str,
        document_id: str,
        document_name: str,
        dataroom_id: str,
        content_type: str = "text/markdown",
    ) -> list[Chunk]:
        """
        Split a document into chunks.

        Args:
            text: Extracted markdown; pages separated by ``---PAGE_BREAK---``.
            document_id: Parent document id, used to build chunk ids.
            document_name: Display name copied onto every chunk.
            dataroom_id: Dataroom the document belongs to.
            content_type: MIME type of the source document.

        Returns:
            Chunks in document order with contiguous zero-based indices.
        """
        s = self._settings
        # Blank pages stay in the list so page numbering is preserved
        pages = [page.strip() for page in text.split(PAGE_BREAK)]
        full_text = clean_markdown("\n\n".join(p for p in pages if p))

        if not full_text or not has_meaningful_content(full_text):
            logger.warning("No content to chunk in '%s'", document_name)
            return []

        profile = analyze_complexity(full_text, s.chunk_min_tokens, s.chunk_max_tokens)
        logger.info(
            "Chunking '%s': complexity=%s (score=%d), size=%d, overlap=%d, pages=%d",
            document_name, profile.level, profile.score,
            profile.chunk_size, profile.overlap, len(pages),
        )

        protected, blocks = protect_blocks(full_text)
        segments = segment_by_headers(protected, blocks)

        drafts: list[_Draft] = []
        for segment in segments:
            self._emit_segment(segment, blocks, profile, drafts)

        restored = [
            _Draft(
                content=restore_blocks(d.content, blocks).strip(),
                header=d.header,
                hierarchy=d.hierarchy,
                tokens=0,
                is_small=d.is_small,
            )
            for d in drafts
        ]
        for d in restored:
            d.tokens = count_tokens(d.content)

        finalized = self._finalize(restored)

        chunks: list[Chunk] = []
        for index, draft in enumerate(finalized):
            chunks.append(Chunk(
                id=f"{document_id}_chunk_{index}",
                content=draft.content,
                document_id=document_id,
                dataroom_id=dataroom_id,
                chunk_index=index,
                content_hash=content_hash(draft.content),
                token_count=draft.tokens,
                page_ranges=attribute_pages(draft.content, pages, s),
                section_header=draft.header,
                header_hierarchy=list(draft.hierarchy),
                is_small_chunk=draft.tokens < s.chunk_min_tokens,
                document_name=document_name,
                content_type=content_type,
            ))

        logger.info(
            "Chunked '%s' into %d chunks (avg %d tokens/chunk)",
            document_name,
            len(chunks),
            sum(c.token_count for c in chunks) // max(len(chunks), 1),
        )
        return chunks

    # -----------------------------------------------------------------------
    # Segment → drafts
    # -----------------------------------------------------------------------

    def _emit_segment(
        self,
        segment: _Segment,
        blocks: list[str],
        profile: ComplexityProfile,
        drafts: list[_Draft],
    ) -> None:
        s = self._settings
        tokens = _protected_tokens(segment.content, blocks)

        if tokens > s.chunk_max_tokens:
            pieces = split_paragraphs(
                segment.content, blocks, profile.chunk_size, profile.overlap,
            )
            for piece in pieces:
                drafts.append(_Draft(
                    content=piece,
                    header=segment.header,
                    hierarchy=segment.hierarchy,
                    tokens=_protected_tokens(piece, blocks),
                ))
            return

        if tokens < s.chunk_min_tokens:
            if drafts:
                previous = drafts[-1]
                merged = previous.content + "\n\n" + segment.content
                merged_tokens = _protected_tokens(merged, blocks)
                if merged_tokens <= s.chunk_max_tokens:
                    previous.content = merged
                    previous.tokens = merged_tokens
                    previous.is_small = merged_tokens < s.chunk_min_tokens
                    return
            drafts.append(_Draft(
                content=segment.content,
                header=segment.header,
                hierarchy=segment.hierarchy,
                tokens=tokens,
                is_small=True,
            ))
            return

        drafts.append(_Draft(
            content=segment.content,
            header=segment.header,
            hierarchy=segment.hierarchy,
            tokens=tokens,
        ))

    # -----------------------------------------------------------------------
    # Final pass
    # -----------------------------------------------------------------------

    def _finalize(self, drafts: list[_Draft]) -> list[_Draft]:
        s = self._settings

        # 1. exact duplicates (normalised-content hash)
        seen: set[str] = set()
        unique: list[_Draft] = []
        for draft in drafts:
            if not draft.content:
                continue
            digest = content_hash(draft.content)
            if digest in seen:
                continue
            seen.add(digest)
            unique.append(draft)

        # 2. small chunks merge forward into their successor
        merged: list[_Draft] = []
        i = 0
        while i < len(unique):
            current = unique[i]
            if current.tokens < s.chunk_min_tokens and i + 1 < len(unique):
                nxt = unique[i + 1]
                content = current.content + "\n\n" + nxt.content
                tokens = count_tokens(content)
                if tokens <= s.chunk_max_tokens:
                    header = (
                        nxt.header if current.header == nxt.header
                        else f"{current.header} + {nxt.header}"
                    )
                    merged.append(_Draft(
                        content=content,
                        header=header,
                        hierarchy=nxt.hierarchy,
                        tokens=tokens,
                    ))
                    i += 2
                    continue
            merged.append(current)
            i += 1

        # 3. empty chunks: tiny and nothing but markdown syntax
        return [
            d for d in merged
            if not (d.tokens < s.chunk_empty_max_tokens
                    and not has_meaningful_content(d.content))
        ]


def chunk_document(
    text: str,
    document_id: str,
    document_name: str,
    dataroom_id: str,
    content_type: str = "text/markdown",
    settings: Settings | None = None,
) -> list[Chunk]:
    """Convenience wrapper around ``DocumentChunker.chunk``."""
    return DocumentChunker(settings).chunk(
        text, document_id, document_name, dataroom_id, content_type,
    )


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------


def analyze_complexity(
    text: str,
    min_tokens: int = 100,
    max_tokens: int = 1200,
) -> ComplexityProfile:
    """
    Score structural density and pick chunk size / overlap.

    Each factor past its cutoff adds points; 8+ is high, 4+ is medium.
    """
    factors = {
        "technical_terms": len(_TECH_TERM_RE.findall(text)),
        "code_blocks": len(_CODE_FENCE_COUNT_RE.findall(text)) // 2,
        "tables": len(_TABLE_ROW_RE.findall(text)),
        "lists": len(_LIST_RE.findall(text)),
        "long_sentences": sum(
            1 for s in _SENTENCE_SPLIT_RE.split(text) if len(s.strip()) > 120
        ),
        "special_characters": len(_SPECIAL_CHAR_RE.findall(text)),
        "numbers": len(_NUMBER_RE.findall(text)),
    }

    score = 0
    if factors["technical_terms"] > 20:
        score += 4
    if factors["code_blocks"] > 3:
        score += 2
    if factors["tables"] > 5:
        score += 3
    if factors["lists"] > 8:
        score += 2
    if factors["long_sentences"] > 15:
        score += 2
    if factors["special_characters"] > 80:
        score += 1
    if factors["numbers"] > 100:
        score += 2

    if score >= 8:
        level = "high"
    elif score >= 4:
        level = "medium"
    else:
        level = "low"

    size, overlap = CHUNK_SIZING[level]
    size = max(min_tokens, min(size, max_tokens))
    overlap = min(overlap, size // 2)
    return ComplexityProfile(
        level=level, score=score, factors=factors, chunk_size=size, overlap=overlap,
    )


# ---------------------------------------------------------------------------
# Block protection
# ---------------------------------------------------------------------------


def protect_blocks(text: str) -> tuple[str, list[str]]:
    """
    Replace non-splittable constructs with ``\\ue000N\\ue001`` placeholders.

    Each placeholder sits on its own line surrounded by blank lines, so it is
    always a paragraph of its own. A horizontal rule only counts as one when
    preceded by a blank line; otherwise "---" is a setext underline.
    """
    lines = text.split("\n")
    blocks: list[str] = []
    out: list[str] = []
    i = 0

    def _stash(block_lines: list[str]) -> None:
        blocks.append("\n".join(block_lines))
        if out and out[-1].strip():
            out.append("")
        out.append(f"\ue000{len(blocks) - 1}\ue001")
        out.append("")

    while i < len(lines):
        line = lines[i]

        fence = _FENCE_RE.match(line)
        if fence:
            marker = fence.group(1)
            j = i + 1
            while j < len(lines) and not lines[j].lstrip().startswith(marker):
                j += 1
            end = min(j, len(lines) - 1)
            _stash(lines[i:end + 1])
            i = end + 1
            continue

        if _TABLE_LINE_RE.match(line):
            j = i
            while j < len(lines) and _TABLE_LINE_RE.match(lines[j]):
                j += 1
            _stash(lines[i:j])
            i = j
            continue

        if _LIST_ITEM_RE.match(line) and not _HR_RE.match(line):
            j = i + 1
            while j < len(lines) and (
                (_LIST_ITEM_RE.match(lines[j]) and not _HR_RE.match(lines[j]))
                or (lines[j].startswith((" ", "\t")) and lines[j].strip())
            ):
                j += 1
            _stash(lines[i:j])
            i = j
            continue

        if _QUOTE_RE.match(line):
            j = i
            while j < len(lines) and _QUOTE_RE.match(lines[j]):
                j += 1
            _stash(lines[i:j])
            i = j
            continue

        previous_blank = i == 0 or not lines[i - 1].strip()
        if _HR_RE.match(line) and previous_blank:
            _stash([line])
            i += 1
            continue

        out.append(line)
        i += 1

    return "\n".join(out), blocks


def restore_blocks(text: str, blocks: list[str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: blocks[int(m.group(1))], text)


def _protected_tokens(text: str, blocks: list[str]) -> int:
    return count_tokens(restore_blocks(text, blocks))


# ---------------------------------------------------------------------------
# Header segmentation
# ---------------------------------------------------------------------------


def detect_headers(lines: list[str]) -> dict[int, tuple[int, str, int]]:
    """
    Find header lines.

    Returns:
        Mapping of line index → (level, header text, lines consumed).
        Setext headers consume their underline as well.
    """
    headers: dict[int, tuple[int, str, int]] = {}
    i = 0
    while i < len(lines):
        line = lines[i]
        md = _MD_HEADER_RE.match(line)
        if md:
            headers[i] = (len(md.group(1)), md.group(2).strip().rstrip("#").strip(), 1)
            i += 1
            continue
        html = _HTML_HEADER_RE.search(line)
        if html:
            title = _HTML_TAG_RE.sub("", html.group(2)).strip()
            headers[i] = (int(html.group(1)), title, 1)
            i += 1
            continue
        if line.strip() and i + 1 < len(lines) and not _PLACEHOLDER_RE.search(line):
            nxt = lines[i + 1]
            if _SETEXT_H1_RE.match(nxt):
                headers[i] = (1, line.strip(), 2)
                i += 2
                continue
            if _SETEXT_H2_RE.match(nxt):
                headers[i] = (2, line.strip(), 2)
                i += 2
                continue
        i += 1
    return headers


def segment_by_headers(protected: str, blocks: list[str]) -> list[_Segment]:
    """Split protected text into header-bounded segments with hierarchy."""
    lines = protected.split("\n")
    headers = detect_headers(lines)

    segments: list[_Segment] = []
    stack: list[tuple[int, str]] = []
    current_lines: list[str] = []
    current_header = DEFAULT_SECTION
    current_hierarchy: list[str] = []

    def _flush() -> None:
        content = "\n".join(current_lines).strip()
        if content and has_meaningful_content(restore_blocks(content, blocks)):
            segments.append(_Segment(
                content=content, header=current_header, hierarchy=current_hierarchy,
            ))

    i = 0
    while i < len(lines):
        if i in headers:
            level, title, consumed = headers[i]
            _flush()
            while stack and stack[-1][0] >= level:
                stack.pop()
            stack.append((level, title))
            current_header = title
            current_hierarchy = [t for _, t in stack]
            current_lines = lines[i:i + consumed]
            i += consumed
            continue
        current_lines.append(lines[i])
        i += 1
    _flush()

    return segments


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------


def split_paragraphs(
    content: str,
    blocks: list[str],
    size: int,
    overlap: int,
) -> list[str]:
    """
    Pack paragraphs into pieces of at most ``size`` tokens.

    When a piece is flushed, its trailing plain paragraphs (up to
    ``overlap`` tokens) are carried into the next one. A single plain
    paragraph larger than ``size`` goes through the token-window splitter.
    A protected block larger than ``size`` is emitted whole.
    """
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(content) if p.strip()]
    pieces: list[str] = []
    current: list[str] = []
    current_tokens = 0

    def _flush() -> list[str]:
        pieces.append("\n\n".join(current))
        carry: list[str] = []
        carry_tokens = 0
        for para in reversed(current):
            if _PLACEHOLDER_RE.search(para):
                break
            t = _protected_tokens(para, blocks)
            if carry_tokens + t > overlap:
                break
            carry.insert(0, para)
            carry_tokens += t
        return carry

    for para in paragraphs:
        para_tokens = _protected_tokens(para, blocks)

        if para_tokens > size and not _PLACEHOLDER_RE.search(para):
            if current:
                _flush()
                current, current_tokens = [], 0
            pieces.extend(split_token_windows(para, size, overlap))
            continue

        if current and current_tokens + para_tokens > size:
            carry = _flush()
            carry_tokens = sum(_protected_tokens(c, blocks) for c in carry)
            if carry_tokens + para_tokens > size:
                carry, carry_tokens = [], 0
            current, current_tokens = carry, carry_tokens

        current.append(para)
        current_tokens += para_tokens

    if current:
        pieces.append("\n\n".join(current))

    return pieces


def split_token_windows(text: str, size: int, overlap: int) -> list[str]:
    """Sliding window of ``size`` tokens advancing by ``size - overlap``."""
    encoder = _get_encoder()
    tokens = encoder.encode(text, disallowed_special=())
    step = max(size - overlap, 1)
    windows: list[str] = []
    for start in range(0, len(tokens), step):
        end = min(start + size, len(tokens))
        piece = encoder.decode(tokens[start:end]).strip()
        if piece:
            windows.append(piece)
        if end >= len(tokens):
            break
    return windows


# ---------------------------------------------------------------------------
# Page attribution
# ---------------------------------------------------------------------------


def score_pages(content: str, pages: list[str]) -> list[tuple[int, float, int]]:
    """
    Score every page against a chunk.

    Distinctive words are those longer than three characters. A page's score
    is the fraction of the chunk's distinctive words (with repeats) found in
    the page text; the third field counts distinct matched words.

    Returns:
        (page number, score, distinct matches), best first; ties keep page order.
    """
    words = [w for w in _normalize(content).split(" ") if len(w) > 3]
    if not words:
        return []

    scored: list[tuple[int, float, int]] = []
    for number, page in enumerate(pages, start=1):
        page_text = _normalize(page)
        matched = [w for w in words if w in page_text]
        scored.append((number, len(matched) / len(words), len(set(matched))))

    scored.sort(key=lambda item: item[1], reverse=True)
    return scored


def attribute_pages(content: str, pages: list[str], settings: Settings) -> list[str]:
    """Pick the chunk's page, falling back to page "1"."""
    if len(pages) <= 1:
        return ["1"]
    scored = score_pages(content, pages)
    if not scored:
        return ["1"]

    page, score, distinct = scored[0]
    if (
        score > settings.page_match_strict_threshold
        and distinct >= settings.page_match_strict_min_words
    ) or (
        score > settings.page_match_loose_threshold
        and distinct >= settings.page_match_loose_min_words
    ):
        return create_page_ranges([page])
    return ["1"]


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip()).lower()
