"""
Feedback recording: turn an executor's report into an archived accuracy delta.

The archive write is the only way preparation improves over time, so a write
that cannot be made is surfaced as ``ArchiveUnavailable`` rather than dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .archive import Archive, ArchiveKind, ArchiveRecord, project_relative_path
from .errors import ArchiveUnavailable, MalformedExecutionReport
from .package import ContextPackage
from .patterns import PatternTracker
from .retry import with_retries

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS: dict[str, type | tuple[type, ...]] = {
    "taskId": str,
    "contextPackageId": str,
    "filesRead": list,
    "filesModified": list,
    "success": bool,
    "compilationPassed": bool,
    "notes": str,
}


class LearningType(str, Enum):
    INSIGHT = "insight"
    CORRECTION = "correction"
    PATTERN = "pattern"
    WARNING = "warning"


class FailureCategory(str, Enum):
    COMPILATION_FAILURE = "compilation_failure"
    TEST_FAILURE = "test_failure"
    MISSING_CONTEXT = "missing_context"
    EXECUTOR_REPORTED = "executor_reported"


@dataclass(frozen=True)
class Learning:
    type: LearningType
    content: str
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "content": self.content, "tags": list(self.tags)}


def _normalize_path(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _relative_paths(paths: Iterable[str], project_path: str | None) -> list[str]:
    if project_path is None:
        return list(paths)
    # Paths outside the project are kept as reported.
    return [project_relative_path(p, project_path) or p for p in paths]


def _path_list(data: dict[str, Any], key: str) -> list[str]:
    value = data[key]
    if not all(isinstance(item, str) for item in value):
        raise MalformedExecutionReport(key, "must be a list of file paths")
    return [_normalize_path(item) for item in value if item.strip()]


@dataclass(frozen=True)
class ExecutionReport:
    """The executor's account of what it did with a context package."""

    task_id: str
    context_package_id: str
    files_read: tuple[str, ...]
    files_modified: tuple[str, ...]
    success: bool
    compilation_passed: bool
    notes: str
    tests_passed: bool | None = None
    executor: str | None = None
    learnings: tuple[Learning, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> ExecutionReport:
        if not isinstance(data, dict):
            raise MalformedExecutionReport("<root>", "must be a JSON object")
        for key, expected in _REQUIRED_FIELDS.items():
            if key not in data:
                raise MalformedExecutionReport(key, "is missing")
            if not isinstance(data[key], expected):
                raise MalformedExecutionReport(key, f"must be of type {expected.__name__}")
        for key in ("taskId", "contextPackageId"):
            if not data[key].strip():
                raise MalformedExecutionReport(key, "must not be empty")

        tests_passed = data.get("testsPassed")
        if tests_passed is not None and not isinstance(tests_passed, bool):
            raise MalformedExecutionReport("testsPassed", "must be a boolean when present")
        executor = data.get("executor")
        if executor is not None and not isinstance(executor, str):
            raise MalformedExecutionReport("executor", "must be a string when present")

        learnings: list[Learning] = []
        for item in data.get("learnings") or []:
            if not isinstance(item, dict) or not isinstance(item.get("content"), str):
                raise MalformedExecutionReport("learnings", "entries need a string `content`")
            try:
                kind = LearningType(item.get("type", LearningType.INSIGHT.value))
            except ValueError as exc:
                raise MalformedExecutionReport("learnings", f"has unknown type {item.get('type')!r}") from exc
            learnings.append(Learning(kind, item["content"], tuple(item.get("tags") or ())))

        return cls(
            task_id=data["taskId"],
            context_package_id=data["contextPackageId"],
            files_read=tuple(_path_list(data, "filesRead")),
            files_modified=tuple(_path_list(data, "filesModified")),
            success=data["success"],
            compilation_passed=data["compilationPassed"],
            notes=data["notes"],
            tests_passed=tests_passed,
            executor=executor,
            learnings=tuple(learnings),
        )


@dataclass(frozen=True)
class MustReadAccuracy:
    predicted: tuple[str, ...]
    actual: tuple[str, ...]
    missed: tuple[str, ...]
    unnecessary: tuple[str, ...]

    @property
    def missed_rate(self) -> float:
        return len(self.missed) / len(self.actual) if self.actual else 0.0

    @property
    def unnecessary_rate(self) -> float:
        return len(self.unnecessary) / len(self.predicted) if self.predicted else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicted": list(self.predicted),
            "actual": list(self.actual),
            "missed": list(self.missed),
            "unnecessary": list(self.unnecessary),
            "missed_rate": round(self.missed_rate, 3),
            "unnecessary_rate": round(self.unnecessary_rate, 3),
        }


def compute_accuracy(predicted: Iterable[str], actual: Iterable[str]) -> MustReadAccuracy:
    """``missed`` and ``unnecessary`` partition the symmetric difference."""
    predicted_set = {_normalize_path(p) for p in predicted}
    actual_set = {_normalize_path(p) for p in actual}
    return MustReadAccuracy(
        predicted=tuple(sorted(predicted_set)),
        actual=tuple(sorted(actual_set)),
        missed=tuple(sorted(actual_set - predicted_set)),
        unnecessary=tuple(sorted(predicted_set - actual_set)),
    )


def classify_failure(report: ExecutionReport, accuracy: MustReadAccuracy) -> FailureCategory | None:
    if report.success:
        return None
    if not report.compilation_passed:
        return FailureCategory.COMPILATION_FAILURE
    if report.tests_passed is False:
        return FailureCategory.TEST_FAILURE
    if accuracy.missed:
        return FailureCategory.MISSING_CONTEXT
    return FailureCategory.EXECUTOR_REPORTED


def _note_tags(notes: str) -> tuple[str, ...]:
    return tuple(word.lower().strip(".,:;!?") for word in notes.split() if len(word) > 3)[:3]


@dataclass
class ExecutionFeedback:
    """Immutable join between a package and its real-world outcome."""

    task_id: str
    context_package_id: str
    task_type: str
    task_description: str
    success: bool
    compilation_passed: bool
    tests_passed: bool | None
    files_actually_read: tuple[str, ...]
    files_actually_modified: tuple[str, ...]
    accuracy: MustReadAccuracy
    learnings: tuple[Learning, ...]
    failure_category: FailureCategory | None = None
    executor: str | None = None
    archive_id: str | None = field(default=None, compare=False)
    pattern_outcomes_recorded: bool = field(default=True, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "context_package_id": self.context_package_id,
            "task_type": self.task_type,
            "task_description": self.task_description,
            "executor": self.executor,
            "outcome": {
                "success": self.success,
                "compilation_passed": self.compilation_passed,
                "tests_passed": self.tests_passed,
                "files_actually_read": list(self.files_actually_read),
                "files_actually_modified": list(self.files_actually_modified),
            },
            "accuracy": self.accuracy.to_dict(),
            "learnings": [learning.to_dict() for learning in self.learnings],
            "failure_category": self.failure_category.value if self.failure_category else None,
        }


class FeedbackRecorder:
    """Validates execution reports against their package and archives the delta."""

    def __init__(
        self,
        archive: Archive,
        pattern_tracker: PatternTracker | None = None,
        *,
        retries: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._archive = archive
        self._pattern_tracker = pattern_tracker
        self._retries = retries
        self._retry_base_delay = retry_base_delay

    def build(
        self,
        report: ExecutionReport,
        package: ContextPackage | None,
        *,
        task_description: str | None = None,
        project_path: str | None = None,
    ) -> ExecutionFeedback:
        """Join ``report`` with ``package``; absolute report paths are made relative to ``project_path``."""
        if package is None or package.id != report.context_package_id:
            raise MalformedExecutionReport(
                "contextPackageId",
                f"references unknown package {report.context_package_id}",
                task_id=report.task_id,
                phase="feedback",
            )
        if package.task_id != report.task_id:
            raise MalformedExecutionReport(
                "taskId",
                f"does not match package {package.id} (task {package.task_id})",
                task_id=report.task_id,
                phase="feedback",
            )

        files_read = _relative_paths(report.files_read, project_path)
        files_modified = _relative_paths(report.files_modified, project_path)
        actual = set(files_read) | set(files_modified)
        accuracy = compute_accuracy(package.must_read_paths, actual)

        learnings = list(report.learnings)
        if report.notes.strip():
            learnings.append(Learning(LearningType.INSIGHT, report.notes.strip(), _note_tags(report.notes)))

        return ExecutionFeedback(
            task_id=report.task_id,
            context_package_id=package.id,
            task_type=package.task_type.value,
            task_description=task_description or package.raw_request,
            success=report.success,
            compilation_passed=report.compilation_passed,
            tests_passed=report.tests_passed,
            files_actually_read=tuple(sorted(set(files_read))),
            files_actually_modified=tuple(sorted(set(files_modified))),
            accuracy=accuracy,
            learnings=tuple(learnings),
            failure_category=classify_failure(report, accuracy),
            executor=report.executor,
        )

    async def record(
        self,
        report: ExecutionReport,
        package: ContextPackage | None,
        *,
        project_path: str,
        task_description: str | None = None,
    ) -> ExecutionFeedback:
        feedback = self.build(report, package, task_description=task_description, project_path=project_path)
        outcome = "success" if feedback.success else "failed"
        record = ArchiveRecord(
            kind=ArchiveKind.EXECUTION_FEEDBACK.value,
            payload=feedback.to_payload(),
            project_path=project_path,
            tags=["execution-feedback", outcome, feedback.task_type],
        )

        try:
            feedback.archive_id = await with_retries(
                lambda: self._archive.store(record),
                attempts=self._retries,
                base_delay=self._retry_base_delay,
                retry_on=(ArchiveUnavailable,),
                label="feedback write",
            )
        except ArchiveUnavailable as exc:
            exc.task_id = feedback.task_id
            exc.phase = "feedback"
            logger.error("Feedback for task %s was not archived: %s", feedback.task_id, exc.message)
            raise

        logger.info(
            "Recorded %s feedback for task %s (missed=%d, unnecessary=%d)",
            outcome,
            feedback.task_id,
            len(feedback.accuracy.missed),
            len(feedback.accuracy.unnecessary),
        )

        if self._pattern_tracker is not None and package is not None and package.patterns:
            try:
                await self._pattern_tracker.record(
                    [p.name for p in package.patterns],
                    project_path,
                    success=feedback.success,
                    task_type=feedback.task_type,
                )
            except ArchiveUnavailable as exc:
                # The feedback itself is stored; resubmitting would duplicate it.
                feedback.pattern_outcomes_recorded = False
                logger.warning(
                    "Feedback %s archived but pattern outcomes were not: %s",
                    feedback.archive_id,
                    exc.message,
                )
        return feedback
