# =============================================================================
# Unit Tests — Tokenizer Utilities and Page Ranges
# =============================================================================
#
# Pure functions: no API keys, databases, or network calls needed.
# =============================================================================

from dataroom_rag.services.page_ranges import (
    create_page_ranges,
    expand_page_ranges,
    page_ranges_match,
)
from dataroom_rag.services.tokenizer import (
    clean_markdown,
    content_hash,
    count_tokens,
    has_meaningful_content,
    normalize_text,
    truncate_to_tokens,
    word_count,
)


class TestCountTokens:
    def test_empty_string_is_zero(self):
        assert count_tokens("") == 0

    def test_counts_grow_with_text(self):
        assert count_tokens("revenue") < count_tokens("revenue grew by fifteen percent")


class TestContentHash:
    """Identity used for embedding deduplication."""

    def test_whitespace_insensitive(self):
        assert content_hash("Net  income\nrose") == content_hash("  Net income rose ")

    def test_different_text_different_hash(self):
        assert content_hash("Net income rose") != content_hash("Net income fell")

    def test_is_sha256_hex(self):
        digest = content_hash("anything")
        assert len(digest) == 64
        int(digest, 16)


class TestTruncateToTokens:
    def test_short_text_unchanged(self):
        assert truncate_to_tokens("short text", 50) == "short text"

    def test_result_within_budget(self):
        text = "The lessee shall pay the monthly rent in advance. " * 40
        truncated = truncate_to_tokens(text, 25)
        assert count_tokens(truncated) <= 25
        assert text.startswith(truncated)

    def test_does_not_cut_words(self):
        text = "alpha beta gamma delta epsilon zeta eta theta iota kappa " * 10
        truncated = truncate_to_tokens(text, 7)
        assert truncated.split()[-1] in text.split()

    def test_zero_budget_is_empty(self):
        assert truncate_to_tokens("anything at all", 0) == ""

    def test_prefixes_not_memoized(self):
        text = "The lessor may terminate the lease on thirty days notice. " * 60
        count_tokens.cache_clear()
        truncate_to_tokens(text, 40)
        assert count_tokens.cache_info().currsize == 1


class TestTextHelpers:
    def test_normalize_collapses_whitespace(self):
        assert normalize_text("  a\t\tb \n c  ") == "a b c"

    def test_clean_markdown_collapses_blank_lines(self):
        cleaned = clean_markdown("# Title   \r\n\r\n\r\n\r\nBody")
        assert cleaned == "# Title\n\nBody"

    def test_markdown_syntax_alone_is_not_meaningful(self):
        assert not has_meaningful_content("## --- | * |")
        assert has_meaningful_content("## Revenue")

    def test_word_count(self):
        assert word_count("what is on page 5") == 5


class TestPageRanges:
    def test_create_collapses_runs(self):
        assert create_page_ranges([5, 1, 2, 3]) == ["1-3", "5"]

    def test_create_ignores_non_positive(self):
        assert create_page_ranges([0, -1, 4]) == ["4"]

    def test_create_empty(self):
        assert create_page_ranges([]) == []

    def test_expand_mixed_forms(self):
        assert expand_page_ranges(["1-3", "5", "7,9"]) == [1, 2, 3, 5, 7, 9]

    def test_expand_reversed_range(self):
        assert expand_page_ranges(["7-5"]) == [5, 6, 7]

    def test_expand_skips_malformed_parts(self):
        assert expand_page_ranges(["x", "2-y", "4"]) == [4]

    def test_round_trip(self):
        pages = [2, 3, 4, 8, 10, 11]
        assert expand_page_ranges(create_page_ranges(pages)) == pages

    def test_match_inside_range(self):
        assert page_ranges_match(["3-7"], [5])

    def test_no_match_outside_range(self):
        assert not page_ranges_match(["3-4", "6"], [5])

    def test_no_requested_pages_never_matches(self):
        assert not page_ranges_match(["1-10"], [])
