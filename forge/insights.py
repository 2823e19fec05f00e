"""
Insight generation over the feedback corpus.

Insights are recommendations for a human reviewer. They are recomputed on
demand and never applied to the pipeline automatically.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .archive import Archive, ArchiveKind, normalize_project_path
from .patterns import PatternScore, PatternTracker

OVER_PREDICTION_RATE = 0.5
LOW_SUCCESS_RATE = 0.5
COMPILES_BUT_FAILS_RATE = 0.7
RARE_TESTS_RATE = 0.3
HIGH_MISSED_RATE = 0.3
SMALL_SAMPLE = 10


class InsightCategory(str, Enum):
    PREPARATION = "preparation"
    EXECUTION = "execution"
    VALIDATION = "validation"
    TESTING = "testing"
    PATTERNS = "patterns"
    DATA = "data"


class InsightPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_PRIORITY_ORDER = {InsightPriority.HIGH: 0, InsightPriority.MEDIUM: 1, InsightPriority.LOW: 2}


@dataclass(frozen=True)
class Metric:
    name: str
    value: float


@dataclass(frozen=True)
class Insight:
    recommendation: str
    supporting_metric: Metric
    category: InsightCategory
    priority: InsightPriority

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendation": self.recommendation,
            "supporting_metric": {"name": self.supporting_metric.name, "value": self.supporting_metric.value},
            "category": self.category.value,
            "priority": self.priority.value,
        }


@dataclass
class ExecutorStats:
    executions: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.executions if self.executions else 0.0


@dataclass
class InsightReport:
    total_executions: int = 0
    success_rate: float = 0.0
    compilation_pass_rate: float = 0.0
    test_pass_rate: float | None = None
    tests_reported_rate: float = 0.0
    mean_unnecessary_rate: float = 0.0
    mean_missed_rate: float = 0.0
    failure_modes: dict[str, int] = field(default_factory=dict)
    by_executor: dict[str, ExecutorStats] = field(default_factory=dict)
    patterns: list[PatternScore] = field(default_factory=list)
    recommendations: list[Insight] = field(default_factory=list)

    @property
    def primary_failure_mode(self) -> str | None:
        if not self.failure_modes:
            return None
        return max(self.failure_modes.items(), key=lambda item: (item[1], item[0]))[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "success_rate": round(self.success_rate, 3),
            "compilation_pass_rate": round(self.compilation_pass_rate, 3),
            "test_pass_rate": None if self.test_pass_rate is None else round(self.test_pass_rate, 3),
            "tests_reported_rate": round(self.tests_reported_rate, 3),
            "mean_unnecessary_rate": round(self.mean_unnecessary_rate, 3),
            "mean_missed_rate": round(self.mean_missed_rate, 3),
            "failure_modes": dict(self.failure_modes),
            "by_executor": {
                name: {
                    "executions": stats.executions,
                    "success_rate": round(stats.success_rate, 3),
                }
                for name, stats in self.by_executor.items()
            },
            "patterns": [p.to_dict() for p in self.patterns],
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def summarize(
    payloads: Iterable[Mapping[str, Any]],
    pattern_stats: Mapping[str, PatternScore] | None = None,
) -> InsightReport:
    """Aggregate ``execution_feedback`` payloads into statistics and recommendations."""
    payloads = list(payloads)
    report = InsightReport(total_executions=len(payloads))
    report.patterns = sorted(
        (pattern_stats or {}).values(), key=lambda s: (-s.success_rate, -s.uses, s.pattern)
    )

    if not payloads:
        report.recommendations = [
            Insight(
                recommendation="No execution feedback yet. Run tasks and report their outcomes with `forge feedback`.",
                supporting_metric=Metric("total_executions", 0),
                category=InsightCategory.DATA,
                priority=InsightPriority.HIGH,
            )
        ]
        return report

    outcomes = [p.get("outcome", {}) for p in payloads]
    accuracies = [p.get("accuracy", {}) for p in payloads]
    total = len(payloads)

    report.success_rate = sum(1 for o in outcomes if o.get("success")) / total
    report.compilation_pass_rate = sum(1 for o in outcomes if o.get("compilation_passed")) / total
    tested = [o["tests_passed"] for o in outcomes if o.get("tests_passed") is not None]
    report.tests_reported_rate = len(tested) / total
    report.test_pass_rate = (sum(1 for t in tested if t) / len(tested)) if tested else None
    report.mean_unnecessary_rate = _mean([float(a.get("unnecessary_rate", 0.0)) for a in accuracies])
    report.mean_missed_rate = _mean([float(a.get("missed_rate", 0.0)) for a in accuracies])
    report.failure_modes = dict(
        Counter(p["failure_category"] for p in payloads if p.get("failure_category")).most_common()
    )

    for payload, outcome in zip(payloads, outcomes, strict=True):
        stats = report.by_executor.setdefault(payload.get("executor") or "unknown", ExecutorStats())
        stats.executions += 1
        stats.successes += 1 if outcome.get("success") else 0

    report.recommendations = _recommend(report)
    return report


def _recommend(report: InsightReport) -> list[Insight]:
    recs: list[Insight] = []

    if report.mean_unnecessary_rate > OVER_PREDICTION_RATE:
        recs.append(
            Insight(
                "Preparation over-predicts must-read files; tighten discovery.",
                Metric("mean_unnecessary_rate", round(report.mean_unnecessary_rate, 3)),
                InsightCategory.PREPARATION,
                InsightPriority.HIGH,
            )
        )

    primary = report.primary_failure_mode
    if report.success_rate < LOW_SUCCESS_RATE and primary:
        recs.append(
            Insight(
                f"Address the primary failure mode: {primary.replace('_', ' ')}.",
                Metric("success_rate", round(report.success_rate, 3)),
                InsightCategory.EXECUTION,
                InsightPriority.HIGH,
            )
        )

    if report.compilation_pass_rate > COMPILES_BUT_FAILS_RATE and report.success_rate < LOW_SUCCESS_RATE:
        recs.append(
            Insight(
                "Code compiles but tasks still fail; add validation beyond compilation.",
                Metric("compilation_pass_rate", round(report.compilation_pass_rate, 3)),
                InsightCategory.VALIDATION,
                InsightPriority.MEDIUM,
            )
        )

    if report.mean_missed_rate > HIGH_MISSED_RATE:
        recs.append(
            Insight(
                "Executors regularly need files the package did not list; widen discovery or use co-modification history.",
                Metric("mean_missed_rate", round(report.mean_missed_rate, 3)),
                InsightCategory.PREPARATION,
                InsightPriority.MEDIUM,
            )
        )

    if report.tests_reported_rate < RARE_TESTS_RATE:
        recs.append(
            Insight(
                "Tests are rarely run or reported; ask executors to report test results.",
                Metric("tests_reported_rate", round(report.tests_reported_rate, 3)),
                InsightCategory.TESTING,
                InsightPriority.LOW,
            )
        )

    preferred = [p for p in report.patterns if p.recommended]
    if preferred:
        best = preferred[0]
        recs.append(
            Insight(
                "Prefer proven conventions: " + ", ".join(p.pattern for p in preferred[:5]) + ".",
                Metric(f"{best.pattern}_success_rate", round(best.success_rate, 3)),
                InsightCategory.PATTERNS,
                InsightPriority.LOW,
            )
        )

    if report.total_executions < SMALL_SAMPLE:
        recs.append(
            Insight(
                "Run more executions to make these statistics reliable.",
                Metric("total_executions", report.total_executions),
                InsightCategory.DATA,
                InsightPriority.LOW,
            )
        )

    return sorted(recs, key=lambda r: _PRIORITY_ORDER[r.priority])


class InsightGenerator:
    def __init__(
        self,
        archive: Archive,
        pattern_tracker: PatternTracker | None = None,
        *,
        sample_limit: int = 500,
    ) -> None:
        self._archive = archive
        self._pattern_tracker = pattern_tracker
        self._sample_limit = sample_limit

    async def generate(self, project_path: str) -> InsightReport:
        project_path = normalize_project_path(project_path)
        records = await self._archive.search(
            "",
            project_path=project_path,
            kind=ArchiveKind.EXECUTION_FEEDBACK.value,
            limit=self._sample_limit,
        )
        payloads = [r.payload for r in records if normalize_project_path(r.project_path) == project_path]
        pattern_stats = await self._pattern_tracker.stats(project_path) if self._pattern_tracker else {}
        return summarize(payloads, pattern_stats)
