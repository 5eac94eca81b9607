# =============================================================================
# Tokenizer Utilities — tiktoken counting, hashing, markdown cleanup
# =============================================================================
#
# Leaf helpers shared by the chunker, the embedding generator, and the
# compression engine. Token counts use cl100k_base, the encoding of
# text-embedding-3-small and the gpt-4o family, so our budgets match what
# the providers actually see.
#
# content_hash() is the identity used for embedding deduplication and the
# chunker's duplicate filter: SHA-256 over whitespace-normalised text.
# =============================================================================

from __future__ import annotations

import hashlib
import re
from functools import lru_cache

import tiktoken

_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")
_MARKDOWN_NOISE_RE = re.compile(r"[#*_>`|~\-=+\[\](){}:;.,!?\"']")
_WORD_RE = re.compile(r"[^\W_]{2,}")


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=8192)
def count_tokens(text: str) -> int:
    """Exact cl100k_base token count. Memoized; chunk texts repeat a lot."""
    if not text:
        return 0
    return _encode_length(text)


def _encode_length(text: str) -> int:
    return len(_get_encoder().encode(text, disallowed_special=()))


def normalize_text(text: str) -> str:
    """Strip and collapse every whitespace run to a single space."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the normalised text."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def clean_markdown(text: str) -> str:
    """
    Normalise markdown before chunking.

    Converts CRLF line endings, drops trailing spaces on every line, and
    collapses runs of three or more newlines into a single blank line.
    Content and markdown syntax are left untouched.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _TRAILING_SPACE_RE.sub("", text)
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """
    Return the longest prefix of ``text`` within ``max_tokens``.

    Binary search over the character length (token count is monotonic in
    prefix length for practical purposes), then snap back to the nearest
    preceding whitespace so no word is cut in half. If the only fitting
    prefix has no whitespace, the hard cut is kept. Prefixes are counted
    with the encoder directly and never enter the count_tokens cache.
    """
    if max_tokens <= 0:
        return ""
    if count_tokens(text) <= max_tokens:
        return text

    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if _encode_length(text[:mid]) <= max_tokens:
            low = mid
        else:
            high = mid - 1

    prefix = text[:low]
    cut = max(prefix.rfind(" "), prefix.rfind("\n"), prefix.rfind("\t"))
    if cut > 0:
        prefix = prefix[:cut]
    return prefix.rstrip()


def has_meaningful_content(text: str) -> bool:
    """True when the text holds at least one real word beyond markdown syntax."""
    stripped = _MARKDOWN_NOISE_RE.sub(" ", text)
    return bool(_WORD_RE.search(stripped))


def word_count(text: str) -> int:
    return len(text.split())
