"""
Learning retrieval: history of similar tasks in the same project.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any

from .archive import Archive, ArchiveKind, ArchiveRecord, normalize_project_path, project_relative_path
from .errors import ArchiveUnavailable
from .keywords import extract_keywords, term_overlap
from .retry import with_retries

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
MAX_DECISIONS = 5
MAX_PATTERNS = 10
MAX_CO_MODIFICATIONS = 10
MIN_CO_OCCURRENCE = 2
KEY_TERMS = 5


@dataclass(frozen=True)
class PreviousAttempt:
    task_description: str
    outcome: str  # 'success', 'partial', 'failed'
    lesson: str
    key_files: tuple[str, ...] = ()
    relevance: float = 0.0


@dataclass(frozen=True)
class RelatedDecision:
    title: str
    rationale: str


@dataclass(frozen=True)
class PatternObservation:
    pattern: str
    project_path: str
    observed_outcome: str


@dataclass(frozen=True)
class CoModification:
    file_a: str
    file_b: str
    co_occurrence_count: int


@dataclass(frozen=True)
class HistoricalContext:
    """Read-only view over the archive for one request in one project."""

    previous_attempts: tuple[PreviousAttempt, ...] = ()
    related_decisions: tuple[RelatedDecision, ...] = ()
    pattern_history: tuple[PatternObservation, ...] = ()
    co_modification_patterns: tuple[CoModification, ...] = ()
    degraded_sources: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (
            self.previous_attempts
            or self.related_decisions
            or self.pattern_history
            or self.co_modification_patterns
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_attempts": [
                {
                    "task_description": a.task_description,
                    "outcome": a.outcome,
                    "lesson": a.lesson,
                    "key_files": list(a.key_files),
                    "relevance": round(a.relevance, 2),
                }
                for a in self.previous_attempts
            ],
            "related_decisions": [
                {"title": d.title, "rationale": d.rationale} for d in self.related_decisions
            ],
            "pattern_history": [
                {"pattern": p.pattern, "project_path": p.project_path, "observed_outcome": p.observed_outcome}
                for p in self.pattern_history
            ],
            "co_modification_patterns": [
                {"file_a": c.file_a, "file_b": c.file_b, "co_occurrence_count": c.co_occurrence_count}
                for c in self.co_modification_patterns
            ],
            "degraded_sources": list(self.degraded_sources),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoricalContext:
        return cls(
            previous_attempts=tuple(
                PreviousAttempt(
                    task_description=a["task_description"],
                    outcome=a["outcome"],
                    lesson=a.get("lesson", ""),
                    key_files=tuple(a.get("key_files", ())),
                    relevance=a.get("relevance", 0.0),
                )
                for a in data.get("previous_attempts", ())
            ),
            related_decisions=tuple(RelatedDecision(**d) for d in data.get("related_decisions", ())),
            pattern_history=tuple(PatternObservation(**p) for p in data.get("pattern_history", ())),
            co_modification_patterns=tuple(
                CoModification(**c) for c in data.get("co_modification_patterns", ())
            ),
            degraded_sources=tuple(data.get("degraded_sources", ())),
        )


def outcome_label(outcome: dict[str, Any]) -> str:
    if outcome.get("success"):
        return "success"
    if outcome.get("compilation_passed"):
        return "partial"
    return "failed"


class LearningRetriever:
    """Queries the archive for prior attempts, decisions, patterns and co-modifications."""

    def __init__(
        self,
        archive: Archive,
        *,
        min_relevance: float = 0.2,
        retries: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._archive = archive
        self._min_relevance = min_relevance
        self._retries = retries
        self._retry_base_delay = retry_base_delay

    async def _search(
        self, query: str, project_path: str, kind: ArchiveKind, limit: int
    ) -> list[ArchiveRecord]:
        records = await with_retries(
            lambda: self._archive.search(query, project_path=project_path, kind=kind.value, limit=limit),
            attempts=self._retries,
            base_delay=self._retry_base_delay,
            retry_on=(ArchiveUnavailable,),
            label=f"archive search ({kind.value})",
        )
        # Results from another project are never history for this one.
        return [r for r in records if normalize_project_path(r.project_path) == project_path]

    async def retrieve(self, task_description: str, project_path: str) -> HistoricalContext:
        project_path = normalize_project_path(project_path)
        terms = extract_keywords(task_description, limit=KEY_TERMS)

        sources = ("previous_attempts", "related_decisions", "pattern_history", "co_modification_patterns")
        results = await asyncio.gather(
            self._previous_attempts(terms, project_path),
            self._related_decisions(terms, project_path),
            self._pattern_history(project_path),
            self._co_modifications(project_path),
            return_exceptions=True,
        )

        sections: dict[str, tuple] = {}
        degraded: list[str] = []
        for name, result in zip(sources, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("History source %s unavailable: %s", name, result)
                degraded.append(name)
                sections[name] = ()
            else:
                sections[name] = tuple(result)

        return HistoricalContext(**sections, degraded_sources=tuple(degraded))

    async def _previous_attempts(self, terms: list[str], project_path: str) -> list[PreviousAttempt]:
        records = await self._search(
            " ".join(terms[:3]), project_path, ArchiveKind.EXECUTION_FEEDBACK, limit=MAX_ATTEMPTS * 4
        )
        attempts: list[PreviousAttempt] = []
        for record in records:
            payload = record.payload
            description = str(payload.get("task_description", ""))
            relevance = term_overlap(terms, extract_keywords(description, limit=KEY_TERMS))
            if relevance < self._min_relevance:
                continue
            outcome = payload.get("outcome", {})
            files = [
                rel
                for path in outcome.get("files_actually_modified", [])
                if (rel := project_relative_path(path, project_path)) is not None
            ]
            learnings = payload.get("learnings", [])
            lesson = "; ".join(str(item.get("content", "")) for item in learnings[:2]) or (
                f"Missed files: {', '.join(payload.get('accuracy', {}).get('missed', [])[:3])}"
                if payload.get("accuracy", {}).get("missed")
                else ""
            )
            attempts.append(
                PreviousAttempt(
                    task_description=description,
                    outcome=outcome_label(outcome),
                    lesson=lesson,
                    key_files=tuple(files),
                    relevance=relevance,
                )
            )
        attempts.sort(key=lambda a: -a.relevance)
        return attempts[:MAX_ATTEMPTS]

    async def _related_decisions(self, terms: list[str], project_path: str) -> list[RelatedDecision]:
        records = await self._search(" ".join(terms), project_path, ArchiveKind.DECISION, limit=MAX_DECISIONS)
        return [
            RelatedDecision(
                title=str(r.payload.get("title", "")),
                rationale=str(r.payload.get("rationale", "")),
            )
            for r in records
            if r.payload.get("title")
        ]

    async def _pattern_history(self, project_path: str) -> list[PatternObservation]:
        records = await self._search("", project_path, ArchiveKind.PATTERN_OUTCOME, limit=MAX_PATTERNS)
        return [
            PatternObservation(
                pattern=str(r.payload.get("pattern", "")),
                project_path=project_path,
                observed_outcome=str(r.payload.get("outcome", "")),
            )
            for r in records
            if r.payload.get("pattern")
        ]

    async def _co_modifications(self, project_path: str) -> list[CoModification]:
        records = await self._search("", project_path, ArchiveKind.EXECUTION_FEEDBACK, limit=100)
        pairs: Counter[tuple[str, str]] = Counter()
        for record in records:
            modified = {
                rel
                for path in record.payload.get("outcome", {}).get("files_actually_modified", [])
                if (rel := project_relative_path(path, project_path)) is not None
            }
            pairs.update(combinations(sorted(modified), 2))
        ranked = sorted(
            ((pair, count) for pair, count in pairs.items() if count >= MIN_CO_OCCURRENCE),
            key=lambda item: (-item[1], item[0]),
        )
        return [
            CoModification(file_a=a, file_b=b, co_occurrence_count=count)
            for (a, b), count in ranked[:MAX_CO_MODIFICATIONS]
        ]
