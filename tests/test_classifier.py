import asyncio

import pytest
from conftest import FailingOracle, FakeOracle

from forge.classifier import (
    ClassificationMethod,
    TaskClassifier,
    TaskType,
    apply_classification,
    candidate_types,
    heuristic_classify,
)
from forge.models import Task
from forge.oracle import OracleClassification


def test_single_type_match_is_confident() -> None:
    task_type, confidence = heuristic_classify("add a README")
    assert task_type == TaskType.DOCUMENTATION
    assert confidence == 0.65


def test_no_keywords_is_unknown() -> None:
    assert heuristic_classify("make the thing nicer somehow") == (TaskType.UNKNOWN, 0.25)


def test_competing_types_lower_confidence_and_use_tie_break() -> None:
    task_type, confidence = heuristic_classify("add tests for the config loader")
    assert task_type == TaskType.TESTING
    assert confidence == 0.35


def test_heuristic_confidence_is_capped() -> None:
    _, confidence = heuristic_classify("Update the README docs, changelog and tutorial guide")
    assert confidence == 0.75


def test_heuristic_is_deterministic() -> None:
    classifier = TaskClassifier()
    first = classifier.classify_heuristic("Fix the crash in the payment handler")
    second = classifier.classify_heuristic("Fix the crash in the payment handler")
    assert first == second
    assert first.task_type == TaskType.CODE
    assert first.method == ClassificationMethod.HEURISTIC


def test_candidate_types_always_offer_two_choices() -> None:
    classification = TaskClassifier().classify_heuristic("make the thing nicer somehow")
    candidates = candidate_types(classification)
    assert len(candidates) >= 2
    assert TaskType.UNKNOWN not in candidates


def test_apply_classification_keeps_task_id() -> None:
    task = Task(id="task-1", raw_request="add a README", project_path="/tmp/shop")
    classification = TaskClassifier().classify_heuristic("add a README")
    apply_classification(task, classification)
    assert task.id == "task-1"
    assert task.task_type == "documentation"
    assert task.classification_method == "heuristic"


@pytest.mark.asyncio
async def test_oracle_overrides_heuristic() -> None:
    oracle = FakeOracle(classification=OracleClassification(TaskType.TESTING, 0.92, "needs tests"))
    result = await TaskClassifier(oracle).classify("add a README")
    assert result.task_type == TaskType.TESTING
    assert result.method == ClassificationMethod.LLM
    assert result.confidence == 0.92
    assert oracle.classify_calls == 1


@pytest.mark.asyncio
async def test_unreachable_oracle_falls_back_after_retries() -> None:
    oracle = FailingOracle()
    classifier = TaskClassifier(oracle, retries=3, retry_base_delay=0)
    result = await classifier.classify("add a README")
    assert oracle.calls == 3
    assert result.method == ClassificationMethod.HEURISTIC
    assert result.task_type == TaskType.DOCUMENTATION


@pytest.mark.asyncio
async def test_slow_oracle_times_out_to_heuristic() -> None:
    class SlowOracle(FakeOracle):
        async def classify(self, raw_request, prior):  # type: ignore[no-untyped-def]
            await asyncio.sleep(1)
            return await super().classify(raw_request, prior)

    classifier = TaskClassifier(SlowOracle(), timeout=0.01, retries=1, retry_base_delay=0)
    result = await classifier.classify("add a README")
    assert result.method == ClassificationMethod.HEURISTIC
