"""Unit tests for glob compilation and key matching."""

import pytest

from kvpubsub.engine.matcher import compile_pattern, glob_match, match_keys, validate_key
from kvpubsub.errors import InvalidSubscriptionError
from kvpubsub.models import SubscriptionKey, SubscriptionKind


class TestGlobMatch:
    """Tests for the glob dialect."""

    @pytest.mark.parametrize(
        "pattern,channel,expected",
        [
            ("news.*", "news.sports", True),
            ("news.*", "news.", True),
            ("news.*", "news", False),
            ("*", "", True),
            ("*", "anything at all", True),
            ("a**b", "axyzb", True),
            ("h?llo", "hello", True),
            ("h?llo", "hllo", False),
            ("h[ae]llo", "hallo", True),
            ("h[ae]llo", "hillo", False),
            ("h[^e]llo", "hallo", True),
            ("h[^e]llo", "hello", False),
            ("h[a-c]llo", "hbllo", True),
            ("h[a-c]llo", "hdllo", False),
            ("h[c-a]llo", "hbllo", True),
            ("news\\*", "news*", True),
            ("news\\*", "newsx", False),
            ("a.b", "a.b", True),
            ("a.b", "axb", False),
            ("line*", "line1\nline2", True),
        ],
    )
    def test_glob(self, pattern, channel, expected):
        assert glob_match(pattern, channel) is expected

    def test_match_is_case_sensitive(self):
        assert glob_match("News.*", "news.a") is False

    def test_empty_class_matches_nothing(self):
        assert glob_match("a[]b", "ab") is False
        assert glob_match("a[]b", "axb") is False

    def test_compiled_patterns_are_cached(self):
        assert compile_pattern("cache.*") is compile_pattern("cache.*")

    @pytest.mark.parametrize("pattern", ["", "news[", "news[a-", "trailing\\"])
    def test_malformed_patterns_rejected(self, pattern):
        with pytest.raises(InvalidSubscriptionError):
            compile_pattern(pattern)


class TestValidateKey:
    """Tests for key validation."""

    def test_valid_keys(self):
        validate_key(SubscriptionKey(SubscriptionKind.EXACT, "news"))
        validate_key(SubscriptionKey(SubscriptionKind.PATTERN, "news.*"))
        validate_key(SubscriptionKey(SubscriptionKind.SHARD, "{user1}.orders"))

    @pytest.mark.parametrize("name", ["", "   "])
    def test_blank_names_rejected(self, name):
        with pytest.raises(InvalidSubscriptionError):
            validate_key(SubscriptionKey(SubscriptionKind.EXACT, name))

    def test_malformed_pattern_rejected(self):
        with pytest.raises(InvalidSubscriptionError):
            validate_key(SubscriptionKey(SubscriptionKind.PATTERN, "news["))

    def test_brackets_allowed_in_exact_names(self):
        validate_key(SubscriptionKey(SubscriptionKind.EXACT, "news["))


class TestMatchKeys:
    """Tests for resolving a message to subscription keys."""

    def test_exact_match(self):
        keys = match_keys("news", SubscriptionKind.EXACT, {"news"}, {"*"}, set())
        assert keys == [SubscriptionKey(SubscriptionKind.EXACT, "news")]

    def test_exact_delivery_ignores_patterns(self):
        assert match_keys("sports", SubscriptionKind.EXACT, {"news"}, {"*"}, set()) == []

    def test_shard_match(self):
        keys = match_keys("orders", SubscriptionKind.SHARD, {"orders"}, set(), {"orders"})
        assert keys == [SubscriptionKey(SubscriptionKind.SHARD, "orders")]

    def test_reported_pattern_selects_one_key(self):
        keys = match_keys(
            "news.a", SubscriptionKind.PATTERN, set(), {"news.*", "*"}, set(), pattern="news.*"
        )
        assert keys == [SubscriptionKey(SubscriptionKind.PATTERN, "news.*")]

    def test_unregistered_reported_pattern(self):
        keys = match_keys("news.a", SubscriptionKind.PATTERN, set(), {"*"}, set(), pattern="news.*")
        assert keys == []

    def test_pattern_without_report_matches_all(self):
        keys = match_keys("news.a", SubscriptionKind.PATTERN, set(), {"news.*", "*", "x*"}, set())
        assert set(keys) == {
            SubscriptionKey(SubscriptionKind.PATTERN, "news.*"),
            SubscriptionKey(SubscriptionKind.PATTERN, "*"),
        }
