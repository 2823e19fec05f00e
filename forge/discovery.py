"""
File discovery: rank project files by relevance to a classified task.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath

from .classifier import TaskType
from .keywords import tokenize

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".venv",
        "venv",
        "node_modules",
        "__pycache__",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".tox",
        "dist",
        "build",
        ".idea",
        ".vscode",
    }
)

TEXT_SUFFIXES = frozenset(
    {
        ".py", ".pyi", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java", ".rb",
        ".md", ".rst", ".txt", ".toml", ".cfg", ".ini", ".json", ".yaml", ".yml",
        ".env", ".sh", ".html", ".css", ".sql",
    }
)

HIGH_SCORE = 3.0
MEDIUM_SCORE = 2.0
PATH_KEYWORD_WEIGHT = 1.5
CONTENT_KEYWORD_WEIGHT = 1.0
CO_MODIFIED_WEIGHT = 1.0


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DiscoveryMode(str, Enum):
    NORMAL = "normal"
    TIGHTENED = "tightened"
    WIDENED = "widened"


@dataclass
class FileCandidate:
    """A file considered relevant to a task, with the evidence for it."""

    path: str
    score: float
    priority: Priority
    reasons: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


@dataclass(frozen=True)
class DiscoveryStrategy:
    """Path patterns that mark a file as relevant for one task type."""

    task_type: TaskType
    description: str
    patterns: tuple[str, ...]
    weight: float = 2.0

    def matches(self, path: str) -> bool:
        return any(re.search(p, path, re.IGNORECASE) for p in self.patterns)


_MANIFESTS = r"^(pyproject\.toml|setup\.cfg|package\.json)$"

STRATEGIES: dict[TaskType, DiscoveryStrategy] = {
    TaskType.DOCUMENTATION: DiscoveryStrategy(
        task_type=TaskType.DOCUMENTATION,
        description="top-level prose or manifest file",
        patterns=(
            r"^[^/]+\.(md|rst|txt|adoc)$",
            r"^docs?/",
            r"(^|/)readme[^/]*$",
            r"^(license|licence|authors|notice)[^/]*$",
            _MANIFESTS,
        ),
    ),
    TaskType.TESTING: DiscoveryStrategy(
        task_type=TaskType.TESTING,
        description="test module or test configuration",
        patterns=(
            r"(^|/)tests?/",
            r"(^|/)__tests__/",
            r"(^|/)test_[^/]+\.py$",
            r"_test\.(py|go)$",
            r"\.(test|spec)\.[jt]sx?$",
            r"(^|/)conftest\.py$",
            r"(^|/)(pytest\.ini|tox\.ini|jest\.config\.[jt]s|vitest\.config\.[jt]s)$",
        ),
    ),
    TaskType.CONFIGURATION: DiscoveryStrategy(
        task_type=TaskType.CONFIGURATION,
        description="configuration, manifest or CI file",
        patterns=(
            r"^[^/]+\.(toml|cfg|ini|ya?ml|json)$",
            r"(^|/)\.env[^/]*$",
            r"(^|/)(dockerfile|docker-compose[^/]*|makefile)$",
            r"^\.github/workflows/",
            r"(^|/)config/",
            r"(^|/)(settings|config)\.(py|[jt]s)$",
        ),
    ),
    TaskType.CODE: DiscoveryStrategy(
        task_type=TaskType.CODE,
        description="source module",
        patterns=(r"\.(py|[jt]sx?|go|rs|java|rb)$",),
        weight=1.0,
    ),
}

_TEST_FILE_RE = re.compile(
    "|".join(STRATEGIES[TaskType.TESTING].patterns), re.IGNORECASE
)


def is_test_path(path: str) -> bool:
    return bool(_TEST_FILE_RE.search(path))


class ProjectIndex:
    """Listing of a project's files (relative POSIX paths) with bounded content reads."""

    def __init__(self, root: str | Path, files: Sequence[str], sample_bytes: int = 65536) -> None:
        self.root = Path(root)
        self.files = sorted(set(files))
        self._sample_bytes = sample_bytes
        self._cache: dict[str, str] = {}

    @classmethod
    def scan(
        cls,
        root: str | Path,
        *,
        max_files: int = 5000,
        sample_bytes: int = 65536,
    ) -> ProjectIndex:
        root_path = Path(root).expanduser().resolve()
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root_path):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                rel = Path(dirpath, name).relative_to(root_path).as_posix()
                files.append(rel)
                if len(files) >= max_files:
                    logger.info("File index truncated at %d files for %s", max_files, root_path)
                    return cls(root_path, files, sample_bytes)
        return cls(root_path, files, sample_bytes)

    @classmethod
    async def ascan(cls, root: str | Path, **kwargs: int) -> ProjectIndex:
        return await asyncio.to_thread(cls.scan, root, **kwargs)

    def __contains__(self, path: str) -> bool:
        return path in self.files

    def token_estimate(self, path: str) -> int:
        """Estimated tokens for the whole file, from its size on disk."""
        try:
            size = (self.root / path).stat().st_size
        except OSError:
            return 0
        return math.ceil(size / 3)

    def read_text(self, path: str) -> str:
        """First bytes of a text file; empty for binary or unreadable files."""
        if path in self._cache:
            return self._cache[path]
        text = ""
        if Path(path).suffix.lower() in TEXT_SUFFIXES or "." not in Path(path).name:
            try:
                with open(self.root / path, "rb") as fh:
                    text = fh.read(self._sample_bytes).decode("utf-8", errors="ignore")
            except OSError as exc:
                logger.debug("Skipping unreadable file %s: %s", path, exc)
        self._cache[path] = text
        return text


def path_terms(path: str) -> set[str]:
    """Directory names, file names and their word parts (``user_service.py`` -> ``user``, ``service``)."""
    terms: set[str] = set()
    for segment in PurePosixPath(path).parts:
        terms.update(tokenize(segment))
        terms.update(tokenize(re.sub(r"[._\-]+", " ", PurePosixPath(segment).stem)))
    return terms


def _tier(score: float) -> Priority:
    if score >= HIGH_SCORE:
        return Priority.HIGH
    if score >= MEDIUM_SCORE:
        return Priority.MEDIUM
    return Priority.LOW


class FileDiscovery:
    """Ranks candidate files using task-type strategies and request keywords."""

    def __init__(
        self,
        *,
        high_tier_limit: int = 5,
        min_relevance: float = 1.0,
        strategies: dict[TaskType, DiscoveryStrategy] | None = None,
    ) -> None:
        self._high_tier_limit = high_tier_limit
        self._min_relevance = min_relevance
        self._strategies = strategies if strategies is not None else STRATEGIES

    def _limits(self, mode: DiscoveryMode) -> tuple[int, float]:
        if mode == DiscoveryMode.TIGHTENED:
            return max(1, self._high_tier_limit // 2), self._min_relevance * 2
        if mode == DiscoveryMode.WIDENED:
            return self._high_tier_limit, self._min_relevance / 2
        return self._high_tier_limit, self._min_relevance

    async def discover(
        self,
        task_type: TaskType,
        index: ProjectIndex,
        keywords: Sequence[str],
        *,
        mode: DiscoveryMode = DiscoveryMode.NORMAL,
        co_modified: Iterable[tuple[str, str]] = (),
    ) -> list[FileCandidate]:
        return await asyncio.to_thread(
            self.rank, task_type, index, keywords, mode=mode, co_modified=co_modified
        )

    def rank(
        self,
        task_type: TaskType,
        index: ProjectIndex,
        keywords: Sequence[str],
        *,
        mode: DiscoveryMode = DiscoveryMode.NORMAL,
        co_modified: Iterable[tuple[str, str]] = (),
    ) -> list[FileCandidate]:
        high_limit, threshold = self._limits(mode)
        strategy = self._strategies.get(task_type)
        partners = self._co_modification_partners(task_type, co_modified)

        candidates: list[FileCandidate] = []
        for path in index.files:
            score, reasons = self._score(path, index, strategy, keywords, partners)
            if score < threshold or not reasons:
                continue
            candidates.append(FileCandidate(path=path, score=score, priority=_tier(score), reasons=reasons))

        candidates.sort(key=lambda c: (-c.score, len(c.path), c.path))

        high_seen = 0
        for candidate in candidates:
            if candidate.priority != Priority.HIGH:
                continue
            high_seen += 1
            if high_seen > high_limit:
                candidate.priority = Priority.MEDIUM
        return candidates

    def _score(
        self,
        path: str,
        index: ProjectIndex,
        strategy: DiscoveryStrategy | None,
        keywords: Sequence[str],
        partners: dict[str, str],
    ) -> tuple[float, list[str]]:
        score = 0.0
        reasons: list[str] = []

        if strategy and strategy.matches(path):
            score += strategy.weight
            reasons.append(f"{strategy.task_type.value} strategy: {strategy.description}")

        terms = path_terms(path)
        path_hits = [kw for kw in keywords if kw in terms]
        if path_hits:
            score += PATH_KEYWORD_WEIGHT * len(path_hits)
            reasons.extend(f'path matches "{kw}"' for kw in path_hits)

        remaining = [kw for kw in keywords if kw not in path_hits]
        if remaining:
            content = index.read_text(path).lower()
            content_hits = [kw for kw in remaining if kw in content]
            if content_hits:
                score += CONTENT_KEYWORD_WEIGHT * len(content_hits)
                reasons.extend(f'content mentions "{kw}"' for kw in content_hits)

        if path in partners:
            score += CO_MODIFIED_WEIGHT
            reasons.append(f"often modified together with {partners[path]}")

        return score, reasons

    def _co_modification_partners(
        self, task_type: TaskType, pairs: Iterable[tuple[str, str]]
    ) -> dict[str, str]:
        partners: dict[str, str] = {}
        for file_a, file_b in pairs:
            if task_type == TaskType.TESTING:
                # Only pairs that involve a test file are a testing signal.
                if is_test_path(file_a) and not is_test_path(file_b):
                    partners.setdefault(file_b, file_a)
                elif is_test_path(file_b) and not is_test_path(file_a):
                    partners.setdefault(file_a, file_b)
            else:
                partners.setdefault(file_a, file_b)
                partners.setdefault(file_b, file_a)
        return partners
