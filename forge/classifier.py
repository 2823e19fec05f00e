"""
Task type classification: keyword heuristics with optional oracle augmentation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .errors import OracleUnavailable
from .keywords import tokenize
from .retry import with_retries

if TYPE_CHECKING:
    from .models import Task
    from .oracle import Oracle

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    DOCUMENTATION = "documentation"
    TESTING = "testing"
    CONFIGURATION = "configuration"
    CODE = "code"
    UNKNOWN = "unknown"


class ClassificationMethod(str, Enum):
    HEURISTIC = "heuristic"
    LLM = "llm"
    HUMAN = "human"


# Tie-break order: earlier wins
TYPE_PRIORITY: tuple[TaskType, ...] = (
    TaskType.CODE,
    TaskType.TESTING,
    TaskType.CONFIGURATION,
    TaskType.DOCUMENTATION,
    TaskType.UNKNOWN,
)

TASK_TYPE_KEYWORDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.DOCUMENTATION: (
        "readme",
        "docs",
        "documentation",
        "document",
        "docstring",
        "docstrings",
        "changelog",
        "guide",
        "tutorial",
        "markdown",
        "usage example",
        "contributing",
    ),
    TaskType.TESTING: (
        "test",
        "tests",
        "testing",
        "unit test",
        "integration test",
        "coverage",
        "pytest",
        "jest",
        "vitest",
        "fixture",
        "fixtures",
        "mock",
        "e2e",
    ),
    TaskType.CONFIGURATION: (
        "config",
        "configuration",
        "configure",
        "settings",
        "environment variable",
        "env",
        "dependency",
        "dependencies",
        "pyproject",
        "package.json",
        "tsconfig",
        "docker",
        "dockerfile",
        "ci",
        "workflow",
        "lint",
        "linter",
    ),
    TaskType.CODE: (
        "implement",
        "feature",
        "function",
        "class",
        "method",
        "endpoint",
        "api",
        "bug",
        "crash",
        "broken",
        "error",
        "refactor",
        "handler",
        "module",
        "algorithm",
        "performance",
    ),
}

NO_MATCH_CONFIDENCE = 0.25
SINGLE_TYPE_BASE = 0.55
SINGLE_TYPE_STEP = 0.10
AMBIGUOUS_BASE = 0.35
AMBIGUOUS_STEP = 0.15
AMBIGUOUS_CEILING = 0.65
HEURISTIC_CEILING = 0.75


@dataclass
class Classification:
    """Result of classifying a raw request."""

    task_type: TaskType
    confidence: float
    method: ClassificationMethod
    scores: dict[TaskType, int] = field(default_factory=dict)
    matched: list[str] = field(default_factory=list)
    rationale: str = ""

    def to_dict(self) -> dict:
        return {
            "task_type": self.task_type.value,
            "confidence": round(self.confidence, 2),
            "method": self.method.value,
            "scores": {t.value: s for t, s in self.scores.items()},
            "matched": list(self.matched),
            "rationale": self.rationale,
        }


def _matches(keyword: str, text: str, tokens: set[str]) -> bool:
    if " " in keyword:
        return keyword in text
    return keyword in tokens


def score_keywords(text: str) -> tuple[dict[TaskType, int], list[str]]:
    """Count distinct rule-table hits per task type."""
    lower = " ".join(text.lower().split())
    tokens = set(tokenize(lower))
    scores: dict[TaskType, int] = {}
    matched: list[str] = []
    for task_type, keywords in TASK_TYPE_KEYWORDS.items():
        hits = [kw for kw in keywords if _matches(kw, lower, tokens)]
        scores[task_type] = len(hits)
        matched.extend(hits)
    return scores, matched


def _rank(scores: dict[TaskType, int]) -> list[TaskType]:
    return sorted(
        (t for t, s in scores.items() if s > 0),
        key=lambda t: (-scores[t], TYPE_PRIORITY.index(t)),
    )


def heuristic_classify(text: str, ceiling: float = HEURISTIC_CEILING) -> tuple[TaskType, float]:
    """Deterministic (type, confidence) for a request, never above ``ceiling``."""
    scores, _ = score_keywords(text)
    ranked = _rank(scores)
    if not ranked:
        return TaskType.UNKNOWN, NO_MATCH_CONFIDENCE

    best = ranked[0]
    if len(ranked) == 1:
        confidence = SINGLE_TYPE_BASE + SINGLE_TYPE_STEP * scores[best]
        return best, round(min(confidence, ceiling), 2)

    margin = scores[best] - scores[ranked[1]]
    confidence = AMBIGUOUS_BASE + AMBIGUOUS_STEP * margin
    return best, round(min(confidence, AMBIGUOUS_CEILING, ceiling), 2)


def candidate_types(classification: Classification, minimum: int = 2) -> list[TaskType]:
    """Plausible task types for a request, best first, at least ``minimum`` long."""
    candidates = _rank(classification.scores)
    if classification.task_type != TaskType.UNKNOWN and classification.task_type not in candidates:
        candidates.insert(0, classification.task_type)
    for task_type in TYPE_PRIORITY:
        if len(candidates) >= minimum:
            break
        if task_type != TaskType.UNKNOWN and task_type not in candidates:
            candidates.append(task_type)
    return candidates


def apply_classification(task: Task, classification: Classification) -> Task:
    """Record a (re)classification on the task; the task id never changes."""
    task.task_type = classification.task_type.value
    task.confidence = classification.confidence
    task.classification_method = classification.method.value
    return task


class TaskClassifier:
    """Classifies requests with heuristics first and the oracle when reachable."""

    def __init__(
        self,
        oracle: Oracle | None = None,
        *,
        timeout: float = 20.0,
        retries: int = 3,
        retry_base_delay: float = 0.5,
        ceiling: float = HEURISTIC_CEILING,
    ) -> None:
        self._oracle = oracle
        self._timeout = timeout
        self._retries = retries
        self._retry_base_delay = retry_base_delay
        self._ceiling = ceiling

    def classify_heuristic(self, raw_request: str) -> Classification:
        scores, matched = score_keywords(raw_request)
        task_type, confidence = heuristic_classify(raw_request, self._ceiling)
        ranked = _rank(scores)
        if not ranked:
            rationale = "No keywords matched."
        elif len(ranked) == 1:
            rationale = "Unambiguous match (only one type matched)."
        else:
            rationale = f"Competing matches across {len(ranked)} types."
        return Classification(
            task_type=task_type,
            confidence=confidence,
            method=ClassificationMethod.HEURISTIC,
            scores=scores,
            matched=matched,
            rationale=rationale,
        )

    async def classify(self, raw_request: str, project_path: str | None = None) -> Classification:
        prior = self.classify_heuristic(raw_request)
        if self._oracle is None:
            return prior

        oracle = self._oracle

        async def ask() -> Classification:
            answer = await asyncio.wait_for(
                oracle.classify(raw_request, prior), timeout=self._timeout
            )
            return Classification(
                task_type=answer.task_type,
                confidence=max(0.0, min(1.0, answer.confidence)),
                method=ClassificationMethod.LLM,
                scores=prior.scores,
                matched=prior.matched,
                rationale=answer.rationale or "Oracle classification",
            )

        try:
            return await with_retries(
                ask,
                attempts=self._retries,
                base_delay=self._retry_base_delay,
                retry_on=(OracleUnavailable, TimeoutError),
                label="oracle classification",
            )
        except (OracleUnavailable, TimeoutError) as exc:
            logger.warning("Oracle classification unavailable, using heuristics: %s", exc)
            return prior
