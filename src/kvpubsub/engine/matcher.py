"""Channel matching.

Pure functions mapping a published channel to the subscription keys it
satisfies. Exact and shard names match by case-sensitive equality; patterns
use the server's glob dialect:

    *        any run of characters (including none)
    ?        exactly one character
    [abc]    one character from the set; ranges like [a-z] are allowed
    [^abc]   one character not in the set
    \\x      the literal character x
"""

from __future__ import annotations

import re
from collections.abc import Collection
from functools import lru_cache

from kvpubsub.errors import InvalidSubscriptionError
from kvpubsub.models import SubscriptionKey, SubscriptionKind


def _translate(pattern: str) -> str:
    """Translate a glob pattern into an anchored regular expression.

    Raises:
        InvalidSubscriptionError: On an unterminated class or dangling escape
    """
    out: list[str] = []
    i, n = 0, len(pattern)

    while i < n:
        c = pattern[i]
        if c == "*":
            # Collapse runs of stars
            while i + 1 < n and pattern[i + 1] == "*":
                i += 1
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == "\\":
            if i + 1 >= n:
                raise InvalidSubscriptionError(f"Pattern {pattern!r} ends with a dangling escape")
            i += 1
            out.append(re.escape(pattern[i]))
        elif c == "[":
            i, char_class = _translate_class(pattern, i)
            out.append(char_class)
        else:
            out.append(re.escape(c))
        i += 1

    return "".join(out)


def _translate_class(pattern: str, start: int) -> tuple[int, str]:
    """Translate the ``[...]`` class opening at ``start``.

    Returns:
        Index of the closing bracket and the regex class
    """
    i = start + 1
    n = len(pattern)
    negate = False
    if i < n and pattern[i] == "^":
        negate = True
        i += 1

    items: list[str] = []
    while i < n and pattern[i] != "]":
        c = pattern[i]
        if c == "\\":
            if i + 1 >= n:
                break
            i += 1
            c = pattern[i]
        if i + 2 < n and pattern[i + 1] == "-" and pattern[i + 2] != "]":
            low, high = c, pattern[i + 2]
            if high == "\\" and i + 3 < n:
                high = pattern[i + 3]
                i += 1
            if low > high:
                low, high = high, low
            items.append(f"{re.escape(low)}-{re.escape(high)}")
            i += 3
            continue
        items.append(re.escape(c))
        i += 1

    if i >= n:
        raise InvalidSubscriptionError(f"Pattern {pattern!r} has an unterminated character class")

    if not items:
        # "[]" matches nothing and "[^]" matches any single character
        return i, "." if negate else "(?!)"
    body = "".join(items)
    return i, f"[^{body}]" if negate else f"[{body}]"


@lru_cache(maxsize=4096)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a glob pattern (cached).

    Raises:
        InvalidSubscriptionError: If the pattern is empty or malformed
    """
    if not pattern:
        raise InvalidSubscriptionError("Pattern cannot be empty")
    return re.compile(_translate(pattern), re.DOTALL)


def glob_match(pattern: str, channel: str) -> bool:
    """Check whether a literal channel name matches a glob pattern."""
    return compile_pattern(pattern).fullmatch(channel) is not None


def validate_key(key: SubscriptionKey) -> None:
    """Reject a key before any request is sent for it.

    Raises:
        InvalidSubscriptionError: On an empty name or malformed pattern
    """
    if not isinstance(key.kind, SubscriptionKind):
        raise InvalidSubscriptionError(f"Unknown subscription kind {key.kind!r}")
    if not key.name or not key.name.strip():
        raise InvalidSubscriptionError("Channel name or pattern cannot be empty or whitespace")
    if key.kind is SubscriptionKind.PATTERN:
        compile_pattern(key.name)


def match_keys(
    channel: str,
    kind: SubscriptionKind,
    exact: Collection[str],
    patterns: Collection[str],
    shard: Collection[str],
    pattern: str | None = None,
) -> list[SubscriptionKey]:
    """Return the registered keys satisfied by a published message.

    Args:
        channel: Literal channel the message was published on
        kind: Kind of delivery reported by the server
        exact: Registered exact channel names
        patterns: Registered patterns
        shard: Registered shard channel names
        pattern: Pattern reported with a pattern delivery, if any

    Returns:
        Matching keys; empty if none
    """
    if kind is SubscriptionKind.EXACT:
        return [SubscriptionKey(kind, channel)] if channel in exact else []

    if kind is SubscriptionKind.SHARD:
        return [SubscriptionKey(kind, channel)] if channel in shard else []

    if pattern is not None:
        return [SubscriptionKey(kind, pattern)] if pattern in patterns else []

    return [SubscriptionKey(kind, p) for p in patterns if glob_match(p, channel)]
