"""Keyword extraction shared by discovery and learning retrieval."""

from __future__ import annotations

import re
from collections.abc import Iterable

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_.+\-]*")

# English filler words
STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "could",
        "do", "does", "for", "from", "has", "have", "how", "i", "if", "in",
        "into", "is", "it", "its", "me", "my", "need", "needs", "not", "of",
        "on", "or", "our", "please", "should", "so", "some", "that", "the",
        "their", "them", "then", "there", "these", "this", "those", "to", "us",
        "was", "we", "were", "what", "when", "where", "which", "while", "who",
        "why", "will", "with", "would", "you", "your",
    }
)

# Words too generic to tie a file to a request
GENERIC_TERMS = frozenset(
    {
        "add", "adding", "all", "any", "app", "better", "change", "changes",
        "clean", "code", "create", "file", "files", "fix", "get", "good",
        "implement", "improve", "make", "more", "new", "nice", "now", "one",
        "project", "set", "support", "thing", "things", "update", "use",
        "using", "way", "work", "working",
    }
)


def tokenize(text: str) -> list[str]:
    """Lower-case word tokens, keeping dotted names such as ``package.json``."""
    return [token.strip("._-+") for token in _TOKEN_RE.findall(text.lower()) if token.strip("._-+")]


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Distinct meaningful terms of ``text`` in order of first appearance."""
    keywords: list[str] = []
    for token in tokenize(text):
        if len(token) <= 2 or token in STOPWORDS or token in GENERIC_TERMS:
            continue
        if token not in keywords:
            keywords.append(token)
        if len(keywords) >= limit:
            break
    return keywords


def term_overlap(first: Iterable[str], second: Iterable[str]) -> float:
    """Share of common terms relative to the larger of the two term sets."""
    a, b = set(first), set(second)
    if not a or not b:
        return 0.0
    return len(a & b) / max(len(a), len(b))
