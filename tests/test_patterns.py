import pytest

from forge.extractors import Convention
from forge.patterns import PatternTracker, aggregate, apply_recommendations


def test_aggregate_counts_outcomes() -> None:
    scores = aggregate(
        [
            {"pattern": "file_naming", "outcome": "success", "task_type": "code"},
            {"pattern": "file_naming", "outcome": "failure", "task_type": "code"},
            {"pattern": "file_naming", "outcome": "success", "task_type": "testing"},
            {"outcome": "success"},
        ]
    )
    score = scores["file_naming"]
    assert (score.success_count, score.failure_count) == (2, 1)
    assert score.contexts == {"code", "testing"}
    assert not score.recommended  # 0.67 success rate


@pytest.mark.asyncio
async def test_recommended_needs_enough_successful_uses(archive, project) -> None:
    tracker = PatternTracker(archive)
    for _ in range(3):
        await tracker.record(["file_naming", "test_layout"], str(project), success=True, task_type="code")
    await tracker.record(["test_layout"], str(project), success=False, task_type="code")
    await tracker.record(["tooling"], str(project), success=True, task_type="code")

    recommended = await tracker.recommended(str(project), "code")
    assert [s.pattern for s in recommended] == ["file_naming", "test_layout"]
    assert await tracker.recommended(str(project), "documentation") == []


@pytest.mark.asyncio
async def test_stats_are_scoped_to_the_project(archive, project, other_project) -> None:
    tracker = PatternTracker(archive)
    await tracker.record(["file_naming"], str(other_project), success=True, task_type="code")
    assert await tracker.stats(str(project)) == {}


def test_apply_recommendations_orders_and_annotates() -> None:
    conventions = [
        Convention("file_naming", "snake_case"),
        Convention("tooling", "ruff"),
        Convention("test_layout", "tests/"),
    ]
    scores = aggregate(
        [{"pattern": "test_layout", "outcome": "success"}] * 3
        + [{"pattern": "tooling", "outcome": "success"}] * 6
        + [{"pattern": "tooling", "outcome": "failure"}]
    )

    ranked = apply_recommendations(conventions, scores.values())

    assert [c.name for c in ranked] == ["test_layout", "tooling", "file_naming"]
    assert [c.success_rate for c in ranked] == [1.0, 0.86, None]
