"""Tests for token estimation."""

import pytest

from persona_context.token_counter import create_token_counter, estimate_tokens


class TestEstimateTokens:
    def test_empty_and_blank(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("   \n ") == 0

    def test_chars_dominate_for_long_words(self):
        assert estimate_tokens("a" * 40) == 10

    def test_words_dominate_for_short_words(self):
        # 10 words of 1 char: 19 chars -> 5, words -> 13
        assert estimate_tokens(" ".join(["a"] * 10)) == 13

    def test_structured_content_inflates(self):
        plain = estimate_tokens("abcdefgh" * 10)
        braced = estimate_tokens("{" + "abcdefgh" * 10 + "}")
        assert braced > plain

    def test_markup_inflates(self):
        assert estimate_tokens("<b>" + "x" * 37) == 12  # ceil(10 * 1.15)

    def test_monotonic_in_length(self):
        assert estimate_tokens("word " * 10) < estimate_tokens("word " * 20)


class TestCreateTokenCounter:
    def test_estimate_mode(self):
        assert create_token_counter("estimate") is estimate_tokens

    def test_callable_mode(self):
        counter = create_token_counter("callable:persona_context.token_counter:estimate_tokens")
        assert counter("a" * 8) == 2

    def test_invalid_callable(self):
        with pytest.raises(ValueError):
            create_token_counter("callable:nomodule")

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="Unknown token counter mode"):
            create_token_counter("bogus")
