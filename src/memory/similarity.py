"""Argument similarity for tool-call deduplication.

Token-set (Jaccard) overlap, a heuristic rather than a contract: the
threshold it is compared against is tunable per deployment.
"""

from __future__ import annotations

import re
from typing import Any

from src.tools.artifact import canonical_json

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?()\[\]{}'\"]+")


def tokenize(text: Any) -> set[str]:
    """Lower-cased tokens split on whitespace and punctuation."""
    if not text or not isinstance(text, str):
        return set()
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if t}


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def extract_string_tokens(value: Any) -> set[str]:
    """Tokens of every string leaf in a nested dict/list structure."""
    tokens: set[str] = set()
    stack = [value]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            tokens |= tokenize(item)
        elif isinstance(item, dict):
            stack.extend(item.values())
        elif isinstance(item, list | tuple):
            stack.extend(item)
    return tokens


def args_similarity(a: dict[str, Any] | None, b: dict[str, Any] | None) -> float:
    """Score in [0, 1]. Exact (key-order-independent) match is 1.0."""
    if a is None or b is None:
        return 0.0
    if canonical_json(a) == canonical_json(b):
        return 1.0

    query_a, query_b = a.get("query"), b.get("query")
    if query_a and query_b and isinstance(query_a, str) and isinstance(query_b, str):
        return jaccard(tokenize(query_a), tokenize(query_b))

    tokens_a = extract_string_tokens(a)
    tokens_b = extract_string_tokens(b)
    if not tokens_a and not tokens_b:
        return 0.0
    return jaccard(tokens_a, tokens_b)
