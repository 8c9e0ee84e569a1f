"""
Glob pattern compilation for bulk key deletion.

Supported syntax is deliberately small: ``*`` matches any run of
characters (including none), ``?`` matches exactly one character and a
backslash escapes the next character. Everything else is literal.
"""

import re
from functools import lru_cache
from typing import Optional, Pattern

_REDIS_SPECIAL = set("*?[]\\^")


def _tokens(pattern: str):
    """Yield (token, is_wildcard) pairs, resolving backslash escapes."""
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            yield pattern[i + 1], False
            i += 2
            continue
        yield char, char in ("*", "?")
        i += 1


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> Pattern[str]:
    """Compile a glob into an anchored regular expression."""
    parts = []
    for token, wildcard in _tokens(pattern):
        if wildcard:
            parts.append(".*" if token == "*" else ".")
        else:
            parts.append(re.escape(token))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def matches(key: str, pattern: str) -> bool:
    """Check whether a key matches a glob pattern."""
    return compile_glob(pattern).match(key) is not None


def literal_key(pattern: str) -> Optional[str]:
    """The single key a pattern names, or None when it has a wildcard."""
    chars = []
    for token, wildcard in _tokens(pattern):
        if wildcard:
            return None
        chars.append(token)
    return "".join(chars)


def to_redis_match(pattern: str) -> str:
    """
    Translate a glob into a Redis ``SCAN MATCH`` pattern.

    Redis also understands character classes, so literal brackets,
    carets and backslashes are escaped to keep the two matchers in
    agreement.
    """
    out = []
    for token, wildcard in _tokens(pattern):
        if wildcard:
            out.append(token)
        elif token in _REDIS_SPECIAL:
            out.append("\\" + token)
        else:
            out.append(token)
    return "".join(out)
