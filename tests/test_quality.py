from dataclasses import replace

import pytest
from conftest import FailingOracle, FakeOracle, make_package

from forge.extractors import ArchitectureSummary, Convention
from forge.oracle import OracleJudgment
from forge.package import MustReadEntry
from forge.quality import QualityGate, Verdict

NAMING = Convention("file_naming", "Source files use snake_case names", ("shop/auth.py",))


def complete_package():
    return replace(
        make_package(patterns=(NAMING,)),
        architecture=ArchitectureSummary(overview="2 files across 1 top-level components"),
    )


@pytest.mark.asyncio
async def test_complete_package_passes() -> None:
    report = await QualityGate().evaluate(complete_package())
    assert report.score == 100
    assert report.passed
    assert report.reasons == []
    assert report.method == "deterministic"


@pytest.mark.asyncio
async def test_score_is_deterministic() -> None:
    gate = QualityGate()
    package = make_package()
    first = await gate.evaluate(package)
    second = await gate.evaluate(package)
    assert first.score == second.score == 80
    assert first.breakdown == second.breakdown


@pytest.mark.asyncio
async def test_empty_package_is_blocked_with_reasons() -> None:
    package = replace(make_package(paths=()), acceptance_criteria=())
    report = await QualityGate().evaluate(package)

    assert report.verdict == Verdict.BLOCK
    assert report.score < 70
    assert "Empty sections: must_read, patterns, architecture, acceptance_criteria" in report.reasons
    assert "No acceptance criteria" in report.reasons
    assert report.reasons[-1] == f"Score {report.score} is below the threshold of 70"


@pytest.mark.asyncio
async def test_unexplained_files_lower_relevance() -> None:
    package = replace(
        complete_package(),
        must_read=(
            MustReadEntry("shop/auth.py", 'path matches "auth"'),
            MustReadEntry("shop/big.py", "large file"),
        ),
    )
    report = await QualityGate().evaluate(package)
    assert report.breakdown.relevance_score == 50
    assert "1 of 2 files are not tied to the task type or request" in report.reasons


@pytest.mark.asyncio
async def test_oracle_judgment_is_blended() -> None:
    oracle = FakeOracle(judgment=OracleJudgment(40, "too many files"))
    report = await QualityGate(oracle=oracle).evaluate(make_package())

    assert report.score == 60
    assert report.method == "blended"
    assert report.oracle_rationale == "too many files"
    assert not report.passed


@pytest.mark.asyncio
async def test_unreachable_oracle_keeps_deterministic_score() -> None:
    oracle = FailingOracle()
    report = await QualityGate(oracle=oracle, retries=2, retry_base_delay=0).evaluate(make_package())
    assert report.score == 80
    assert report.method == "deterministic"
    assert oracle.calls == 2


@pytest.mark.asyncio
async def test_threshold_is_configurable() -> None:
    report = await QualityGate(threshold=90).evaluate(make_package())
    assert report.verdict == Verdict.BLOCK
