import pytest
from conftest import FailingArchive, InMemoryArchive, PatternWriteFailingArchive, make_package

from forge.archive import ArchiveKind
from forge.errors import ArchiveUnavailable, MalformedExecutionReport
from forge.extractors import Convention
from forge.feedback import (
    ExecutionReport,
    FailureCategory,
    FeedbackRecorder,
    LearningType,
    classify_failure,
    compute_accuracy,
)
from forge.patterns import PatternTracker


def report_data(package, **overrides) -> dict:
    data = {
        "taskId": package.task_id,
        "contextPackageId": package.id,
        "filesRead": [],
        "filesModified": ["shop/auth.py", "shop/tokens.py"],
        "success": True,
        "compilationPassed": True,
        "notes": "",
    }
    data.update(overrides)
    return data


def test_accuracy_partitions_the_difference() -> None:
    accuracy = compute_accuracy(["a.py", "c.py"], ["a.py", "b.py"])
    assert accuracy.missed == ("b.py",)
    assert accuracy.unnecessary == ("c.py",)
    assert accuracy.missed_rate == 0.5
    assert accuracy.unnecessary_rate == 0.5


def test_accuracy_normalizes_paths() -> None:
    accuracy = compute_accuracy(["./shop/a.py"], ["shop\\a.py"])
    assert accuracy.missed == accuracy.unnecessary == ()


def test_accuracy_with_nothing_predicted() -> None:
    accuracy = compute_accuracy([], ["a.py"])
    assert accuracy.missed == ("a.py",)
    assert accuracy.unnecessary_rate == 0.0


@pytest.mark.parametrize(
    ("field", "value"),
    [("filesModified", None), ("success", "yes"), ("taskId", "  "), ("testsPassed", "no")],
)
def test_malformed_report_names_the_field(field, value) -> None:
    data = report_data(make_package(), **{field: value})
    with pytest.raises(MalformedExecutionReport) as exc_info:
        ExecutionReport.from_dict(data)
    assert exc_info.value.field == field


def test_missing_field_is_reported() -> None:
    data = report_data(make_package())
    del data["notes"]
    with pytest.raises(MalformedExecutionReport, match="`notes` is missing"):
        ExecutionReport.from_dict(data)


def test_report_must_be_an_object() -> None:
    with pytest.raises(MalformedExecutionReport):
        ExecutionReport.from_dict(["not", "an", "object"])


def test_unknown_learning_type_is_rejected() -> None:
    data = report_data(make_package(), learnings=[{"type": "rumor", "content": "x"}])
    with pytest.raises(MalformedExecutionReport) as exc_info:
        ExecutionReport.from_dict(data)
    assert exc_info.value.field == "learnings"


def test_failure_categories() -> None:
    package = make_package()
    accuracy = compute_accuracy(package.must_read_paths, ["shop/auth.py"])

    def category(**overrides):
        return classify_failure(ExecutionReport.from_dict(report_data(package, **overrides)), accuracy)

    assert category() is None
    assert category(success=False, compilationPassed=False) == FailureCategory.COMPILATION_FAILURE
    assert category(success=False, testsPassed=False) == FailureCategory.TEST_FAILURE
    assert category(success=False) == FailureCategory.EXECUTOR_REPORTED


@pytest.mark.asyncio
async def test_record_archives_accuracy_delta(archive, project) -> None:
    package = make_package(("shop/auth.py", "shop/session.py"))
    report = ExecutionReport.from_dict(
        report_data(package, filesRead=["./shop/auth.py"], notes="Token expiry lives in tokens module")
    )

    feedback = await FeedbackRecorder(archive).record(report, package, project_path=str(project))

    assert feedback.accuracy.missed == ("shop/tokens.py",)
    assert feedback.accuracy.unnecessary == ("shop/session.py",)
    assert feedback.learnings[-1].type == LearningType.INSIGHT
    [record] = archive.records
    assert record.kind == ArchiveKind.EXECUTION_FEEDBACK.value
    assert record.id == feedback.archive_id
    assert record.tags == ["execution-feedback", "success", "code"]
    assert record.payload["outcome"]["files_actually_modified"] == ["shop/auth.py", "shop/tokens.py"]
    assert record.payload["task_description"] == package.raw_request


@pytest.mark.asyncio
async def test_report_for_unknown_package_is_rejected(archive, project) -> None:
    package = make_package()
    report = ExecutionReport.from_dict(report_data(package, contextPackageId="missing"))
    with pytest.raises(MalformedExecutionReport) as exc_info:
        await FeedbackRecorder(archive).record(report, package, project_path=str(project))
    assert exc_info.value.field == "contextPackageId"
    assert archive.records == []


@pytest.mark.asyncio
async def test_report_for_other_task_is_rejected(archive, project) -> None:
    package = make_package()
    report = ExecutionReport.from_dict(report_data(package, taskId="task-2"))
    with pytest.raises(MalformedExecutionReport) as exc_info:
        await FeedbackRecorder(archive).record(report, package, project_path=str(project))
    assert exc_info.value.field == "taskId"


@pytest.mark.asyncio
async def test_failed_archive_write_surfaces(project) -> None:
    archive = FailingArchive()
    package = make_package()
    report = ExecutionReport.from_dict(report_data(package))

    with pytest.raises(ArchiveUnavailable) as exc_info:
        await FeedbackRecorder(archive, retries=2, retry_base_delay=0).record(
            report, package, project_path=str(project)
        )
    assert exc_info.value.phase == "feedback"
    assert exc_info.value.task_id == package.task_id
    assert archive.calls == 2


@pytest.mark.asyncio
async def test_pattern_outcomes_follow_feedback(archive, project) -> None:
    package = make_package(patterns=(Convention("file_naming", "snake_case"),))
    report = ExecutionReport.from_dict(report_data(package, success=False))

    await FeedbackRecorder(archive, PatternTracker(archive)).record(report, package, project_path=str(project))

    pattern_records = [r for r in archive.records if r.kind == ArchiveKind.PATTERN_OUTCOME.value]
    assert [r.payload for r in pattern_records] == [
        {"pattern": "file_naming", "outcome": "failure", "task_type": "code"}
    ]


@pytest.mark.asyncio
async def test_absolute_report_paths_are_made_project_relative(archive, project) -> None:
    package = make_package(("shop/auth.py", "shop/session.py"))
    report = ExecutionReport.from_dict(
        report_data(
            package,
            filesRead=[str(project / "shop" / "session.py")],
            filesModified=[str(project / "shop" / "auth.py")],
        )
    )

    feedback = await FeedbackRecorder(archive).record(report, package, project_path=str(project))

    assert feedback.accuracy.missed == ()
    assert feedback.accuracy.unnecessary == ()
    assert feedback.files_actually_modified == ("shop/auth.py",)
    assert archive.records[0].payload["outcome"]["files_actually_read"] == ["shop/session.py"]


def test_paths_outside_the_project_are_kept_as_reported(project) -> None:
    package = make_package(("shop/auth.py",))
    report = ExecutionReport.from_dict(report_data(package, filesModified=["/etc/hosts", "shop/auth.py"]))

    feedback = FeedbackRecorder(InMemoryArchive()).build(report, package, project_path=str(project))

    assert feedback.accuracy.missed == ("/etc/hosts",)
    assert feedback.accuracy.unnecessary == ()


@pytest.mark.asyncio
async def test_failed_pattern_write_keeps_the_feedback(project) -> None:
    archive = PatternWriteFailingArchive()
    package = make_package(patterns=(Convention("file_naming", "snake_case"),))
    report = ExecutionReport.from_dict(report_data(package))

    feedback = await FeedbackRecorder(
        archive, PatternTracker(archive, retries=2, retry_base_delay=0), retry_base_delay=0
    ).record(report, package, project_path=str(project))

    assert feedback.archive_id is not None
    assert not feedback.pattern_outcomes_recorded
    assert [r.kind for r in archive.records] == [ArchiveKind.EXECUTION_FEEDBACK.value]
    assert archive.pattern_writes == 2
