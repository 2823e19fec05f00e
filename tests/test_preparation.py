import pytest
from conftest import FailingArchive, InMemoryArchive

from forge.classifier import ClassificationMethod, TaskClassifier, TaskType
from forge.discovery import FileDiscovery, Priority
from forge.events import EventEmitter, EventType
from forge.extractors import ArchitectureExtractor, PatternExtractor
from forge.human_sync import ABORT_OPTION, HumanSync, SyncState, SyncTrigger
from forge.learning import LearningRetriever
from forge.patterns import PatternTracker
from forge.models import Task
from forge.preparation import Preparer
from forge.quality import QualityGate
from forge.state import TaskStatus

PROSE_OR_CONFIG = (".md", ".rst", ".txt", ".toml", ".cfg", ".json")


def build_preparer(archive=None, *, threshold=70, events=None, pattern_tracker=None):
    bus = EventEmitter()
    if events is not None:
        bus.on_event(lambda event: events.append(event.type))
    return Preparer(
        TaskClassifier(),
        FileDiscovery(),
        PatternExtractor(),
        ArchitectureExtractor(),
        LearningRetriever(archive if archive is not None else InMemoryArchive(), retry_base_delay=0),
        QualityGate(threshold),
        HumanSync(),
        pattern_tracker=pattern_tracker,
        bus=bus,
    )


def make_task(project, raw_request) -> Task:
    return Task(id="task-1", raw_request=raw_request, project_path=str(project))


@pytest.mark.asyncio
async def test_readme_request_is_prepared(project) -> None:
    events: list[EventType] = []
    outcome = await build_preparer(events=events).prepare(make_task(project, "add a README"))

    assert outcome.classification.task_type == TaskType.DOCUMENTATION
    assert outcome.classification.method == ClassificationMethod.HEURISTIC
    assert outcome.status == TaskStatus.PREPARED
    assert outcome.sync_request is None

    package = outcome.require_package()
    assert package.version == 1
    assert package.quality_score >= 70
    high = [e for e in package.must_read if e.tier == Priority.HIGH]
    assert [e.path for e in high] == ["docs/guide.md"]
    assert all(e.path.endswith(PROSE_OR_CONFIG) for e in package.must_read)
    assert all(e.reason for e in package.must_read)
    assert EventType.TASK_CLASSIFIED in events
    assert events[-1] == EventType.QUALITY_PASSED


@pytest.mark.asyncio
async def test_ambiguous_request_asks_a_human(project) -> None:
    outcome = await build_preparer().prepare(make_task(project, "add tests for the config loader"))

    assert outcome.status == TaskStatus.AWAITING_HUMAN
    assert outcome.attempts == []
    request = outcome.sync_request
    assert request.trigger == SyncTrigger.LOW_CONFIDENCE.value
    assert request.state == SyncState.QUESTION_GENERATED.value
    assert len(request.options) >= 3
    assert request.options[-1] == ABORT_OPTION


@pytest.mark.asyncio
async def test_unreachable_archive_still_prepares(project) -> None:
    archive = FailingArchive()
    outcome = await build_preparer(archive).prepare(make_task(project, "add a README"))

    package = outcome.require_package()
    assert package.history.is_empty
    assert "previous_attempts" in outcome.degraded_sources
    assert any(risk.startswith("History incomplete") for risk in package.risks)


@pytest.mark.asyncio
async def test_blocked_package_is_revised_once(project) -> None:
    # Source files alone score LOW for a forced code task, so the first package is empty.
    outcome = await build_preparer().prepare(make_task(project, "add a README"), task_type=TaskType.CODE)

    assert outcome.classification.method == ClassificationMethod.HUMAN
    assert [package.version for package, _ in outcome.attempts] == [1, 2]
    first, second = (report for _, report in outcome.attempts)
    assert not first.passed
    assert second.passed
    assert outcome.status == TaskStatus.PREPARED


@pytest.mark.asyncio
async def test_second_block_escalates_to_human(project) -> None:
    events: list[EventType] = []
    outcome = await build_preparer(threshold=101, events=events).prepare(make_task(project, "add a README"))

    assert len(outcome.attempts) == 2
    assert outcome.status == TaskStatus.AWAITING_HUMAN
    assert outcome.sync_request.trigger == SyncTrigger.REPEATED_BLOCK.value
    assert events.count(EventType.QUALITY_BLOCKED) == 2
    assert events[-1] == EventType.HUMAN_INPUT_REQUESTED


@pytest.mark.asyncio
async def test_versions_continue_from_first_version(project) -> None:
    outcome = await build_preparer().prepare(make_task(project, "add a README"), first_version=3)
    assert outcome.require_package().version == 3


@pytest.mark.asyncio
async def test_proven_conventions_lead_the_package(project) -> None:
    archive = InMemoryArchive()
    tracker = PatternTracker(archive)
    for _ in range(3):
        await tracker.record(["tooling"], str(project), success=True, task_type="documentation")

    outcome = await build_preparer(archive, pattern_tracker=tracker).prepare(make_task(project, "add a README"))

    patterns = outcome.require_package().patterns
    assert patterns[0].name == "tooling"
    assert patterns[0].success_rate == 1.0
    assert all(p.success_rate is None for p in patterns[1:])
