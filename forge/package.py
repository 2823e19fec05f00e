"""
ContextPackage: the immutable bundle handed to an external executor.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from .budget import DEFAULT_TOTAL_TOKENS, ContextBudget
from .classifier import TaskType
from .discovery import FileCandidate, Priority
from .extractors import ArchitectureSummary, Convention
from .learning import HistoricalContext
from .models import utcnow

# Criteria that make a package actionable for each task type
EXPECTED_CRITERIA: dict[TaskType, tuple[str, ...]] = {
    TaskType.CODE: ("Code compiles without errors",),
    TaskType.TESTING: ("New and existing tests pass", "Tests cover the requested behavior"),
    TaskType.DOCUMENTATION: (
        "Documentation describes the requested change accurately",
        "Examples in the documentation match the current code",
    ),
    TaskType.CONFIGURATION: (
        "Configuration loads without errors",
        "Existing environments keep working with the new configuration",
    ),
    TaskType.UNKNOWN: ("Functionality works as described",),
}

VAGUE_TERMS = ("better", "improve", "optimize", "clean", "nice", "good", "somehow", "etc")
SHORT_REQUEST_CHARS = 50
BROAD_CHANGE_FILES = 20
HEAVY_DEPENDENCY_COUNT = 30


class PackageAssemblyError(ValueError):
    """Raised when a package would violate its structural invariants."""


@dataclass(frozen=True)
class MustReadEntry:
    path: str
    reason: str
    tier: Priority = Priority.MEDIUM
    # Tokens of this file the executor should spend; None when no budget was applied
    tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"path": self.path, "reason": self.reason, "tier": self.tier.value}
        if self.tokens is not None:
            data["tokens"] = self.tokens
        return data


@dataclass(frozen=True)
class ContextPackage:
    """Versioned preparation output; a new version is created instead of mutating one."""

    task_id: str
    version: int
    task_type: TaskType
    raw_request: str
    must_read: tuple[MustReadEntry, ...]
    patterns: tuple[Convention, ...]
    architecture: ArchitectureSummary
    history: HistoricalContext
    acceptance_criteria: tuple[str, ...]
    risks: tuple[str, ...] = ()
    ambiguities: tuple[str, ...] = ()
    quality_score: int | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def must_read_paths(self) -> list[str]:
        return [entry.path for entry in self.must_read]

    def with_score(self, score: int) -> ContextPackage:
        return replace(self, quality_score=score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "version": self.version,
            "task_type": self.task_type.value,
            "raw_request": self.raw_request,
            "must_read": [e.to_dict() for e in self.must_read],
            "patterns": [p.to_dict() for p in self.patterns],
            "architecture": self.architecture.to_dict(),
            "history": self.history.to_dict(),
            "acceptance_criteria": list(self.acceptance_criteria),
            "risks": list(self.risks),
            "ambiguities": list(self.ambiguities),
            "quality_score": self.quality_score,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextPackage:
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            version=int(data["version"]),
            task_type=TaskType(data["task_type"]),
            raw_request=data.get("raw_request", ""),
            must_read=tuple(
                MustReadEntry(
                    path=e["path"],
                    reason=e["reason"],
                    tier=Priority(e.get("tier", "medium")),
                    tokens=e.get("tokens"),
                )
                for e in data.get("must_read", ())
            ),
            patterns=tuple(Convention.from_dict(p) for p in data.get("patterns", ())),
            architecture=ArchitectureSummary.from_dict(data.get("architecture", {})),
            history=HistoricalContext.from_dict(data.get("history", {})),
            acceptance_criteria=tuple(data.get("acceptance_criteria", ())),
            risks=tuple(data.get("risks", ())),
            ambiguities=tuple(data.get("ambiguities", ())),
            quality_score=data.get("quality_score"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
        )


def infer_acceptance_criteria(raw_request: str, task_type: TaskType) -> list[str]:
    lower = raw_request.lower()
    criteria = list(EXPECTED_CRITERIA[task_type])
    if task_type == TaskType.CODE and re.search(r"\b(error|bug|crash|broken|fail)", lower):
        criteria.append("The reported error no longer occurs")
    if task_type != TaskType.TESTING and re.search(r"\btests?\b", lower):
        criteria.append("Tests pass")
    if "Functionality works as described" not in criteria:
        criteria.append("Functionality works as described")
    return criteria


def assess_risks(
    must_read: Sequence[MustReadEntry],
    architecture: ArchitectureSummary,
    history: HistoricalContext,
) -> list[str]:
    risks: list[str] = []
    if not must_read:
        risks.append("No relevant files found; the executor must explore the project on its own")
    elif len(must_read) > BROAD_CHANGE_FILES:
        risks.append(f"Broad change touching {len(must_read)} files")
    if len(architecture.dependencies) > HEAVY_DEPENDENCY_COUNT:
        risks.append("Many dependencies; watch for version conflicts")
    for attempt in history.previous_attempts:
        if attempt.outcome == "failed":
            lesson = f": {attempt.lesson}" if attempt.lesson else ""
            risks.append(f"A similar task failed before ({attempt.task_description[:60]}){lesson}")
    if history.degraded_sources:
        risks.append("History incomplete: " + ", ".join(history.degraded_sources) + " unavailable")
    return risks


def find_ambiguities(raw_request: str) -> list[str]:
    lower = raw_request.lower()
    ambiguities = [
        f'Vague term "{term}" has no measurable target'
        for term in VAGUE_TERMS
        if re.search(rf"\b{term}", lower)
    ]
    if len(raw_request.strip()) < SHORT_REQUEST_CHARS:
        ambiguities.append("Short request may lack detail")
    return ambiguities


def _history_entries(
    history: HistoricalContext, known_paths: set[str], file_exists: set[str]
) -> list[MustReadEntry]:
    entries: list[MustReadEntry] = []
    for attempt in history.previous_attempts:
        if attempt.outcome != "success":
            continue
        for path in attempt.key_files:
            if path in file_exists and path not in known_paths:
                known_paths.add(path)
                entries.append(
                    MustReadEntry(
                        path=path,
                        reason=f"modified in a previous similar task: {attempt.task_description[:60]}",
                        tier=Priority.LOW,
                    )
                )
    return entries


def assemble_package(
    *,
    task_id: str,
    raw_request: str,
    task_type: TaskType,
    version: int,
    candidates: Sequence[FileCandidate],
    patterns: Sequence[Convention],
    architecture: ArchitectureSummary,
    history: HistoricalContext,
    indexed_files: Sequence[str] = (),
    include_low: bool = False,
    max_must_read: int = 15,
    token_estimate: Callable[[str], int] | None = None,
    token_budget: int = DEFAULT_TOTAL_TOKENS,
) -> ContextPackage:
    """Build one package version from the gathered evidence.

    Entries are ordered by tier (candidate order is kept inside a tier) and
    every entry must carry a reason. With ``token_estimate`` the package is
    fitted to ``token_budget``: files that get no tokens are left out, and
    history and patterns are cut to their share.
    """
    tiers = {Priority.HIGH, Priority.MEDIUM} | ({Priority.LOW} if include_low else set())
    must_read = [
        MustReadEntry(path=c.path, reason=c.reason, tier=c.priority)
        for c in candidates
        if c.priority in tiers
    ]
    known = {entry.path for entry in must_read}
    must_read.extend(_history_entries(history, known, set(indexed_files)))

    for entry in must_read:
        if not entry.reason.strip():
            raise PackageAssemblyError(f"must_read entry {entry.path} has no reason")

    tier_order = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}
    must_read = sorted(must_read, key=lambda e: tier_order[e.tier])[:max_must_read]

    budget_risks: list[str] = []
    if token_estimate is not None:
        budget = ContextBudget(token_budget)
        estimates = {e.path: token_estimate(e.path) for e in must_read}
        granted = budget.allocate_files([(e.path, e.tier, estimates[e.path]) for e in must_read])
        fitted = [
            replace(e, tokens=granted[e.path])
            for e in must_read
            if granted[e.path] > 0 or estimates[e.path] == 0
        ]
        if len(fitted) < len(must_read):
            budget_risks.append(f"Token budget left out {len(must_read) - len(fitted)} file(s)")
        partial = sum(1 for e in fitted if e.tokens < estimates[e.path])
        if partial:
            budget_risks.append(f"{partial} file(s) exceed their token allocation; read them selectively")
        must_read = fitted
        history = budget.fit_history(history)
        patterns = budget.fit_patterns(patterns)

    return ContextPackage(
        task_id=task_id,
        version=version,
        task_type=task_type,
        raw_request=raw_request,
        must_read=tuple(must_read),
        patterns=tuple(patterns),
        architecture=architecture,
        history=history,
        acceptance_criteria=tuple(infer_acceptance_criteria(raw_request, task_type)),
        risks=tuple(assess_risks(must_read, architecture, history) + budget_risks),
        ambiguities=tuple(find_ambiguities(raw_request)),
    )
