"""
Multi-factor quality scoring for context packages.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .classifier import TaskType
from .errors import OracleUnavailable
from .package import EXPECTED_CRITERIA, ContextPackage, MustReadEntry
from .retry import with_retries

if TYPE_CHECKING:
    from .oracle import Oracle, OracleJudgment

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 70

JUDGMENT_CRITERIA = [
    "Every listed file is needed for the task",
    "No obviously relevant file is missing",
    "Acceptance criteria are specific and checkable",
]

_KEYWORD_REASON_RE = re.compile(r'(path matches|content mentions) "')


class Verdict(str, Enum):
    PASS = "pass"
    BLOCK = "block"


@dataclass
class QualityBreakdown:
    """Detailed breakdown of package quality scores (each 0-100)."""

    completeness_score: float
    relevance_score: float
    actionability_score: float

    @property
    def weighted_total(self) -> float:
        return (
            0.40 * self.completeness_score
            + 0.35 * self.relevance_score
            + 0.25 * self.actionability_score
        )

    def to_dict(self) -> dict:
        return {
            "completeness": round(self.completeness_score, 2),
            "relevance": round(self.relevance_score, 2),
            "actionability": round(self.actionability_score, 2),
            "weighted_total": round(self.weighted_total, 2),
        }


@dataclass
class QualityReport:
    score: int
    verdict: Verdict
    breakdown: QualityBreakdown
    reasons: list[str] = field(default_factory=list)
    method: str = "deterministic"
    oracle_rationale: str | None = None

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASS

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "verdict": self.verdict.value,
            "breakdown": self.breakdown.to_dict(),
            "reasons": list(self.reasons),
            "method": self.method,
            "oracle_rationale": self.oracle_rationale,
        }


def is_task_relevant(entry: MustReadEntry, task_type: TaskType) -> bool:
    """An entry is relevant when its reason cites the task-type strategy or a request keyword."""
    reason = entry.reason.lower()
    if not reason.strip():
        return False
    if task_type != TaskType.UNKNOWN and re.search(rf"\b{task_type.value}\b", reason):
        return True
    return bool(_KEYWORD_REASON_RE.search(reason))


class QualityGate:
    """Scores packages and blocks the ones below threshold."""

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        oracle: Oracle | None = None,
        *,
        timeout: float = 20.0,
        retries: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self.threshold = threshold
        self._oracle = oracle
        self._timeout = timeout
        self._retries = retries
        self._retry_base_delay = retry_base_delay

    def score(self, package: ContextPackage) -> tuple[QualityBreakdown, list[str]]:
        """Deterministic breakdown plus the deficiencies that lowered it."""
        reasons: list[str] = []

        sections = {
            "must_read": bool(package.must_read),
            "patterns": bool(package.patterns),
            "architecture": not package.architecture.is_empty,
            "acceptance_criteria": bool(package.acceptance_criteria),
        }
        missing = [name for name, present in sections.items() if not present]
        if missing:
            reasons.append(f"Empty sections: {', '.join(missing)}")
        completeness = (len(sections) - len(missing)) / len(sections) * 100

        if package.must_read:
            relevant = [e for e in package.must_read if is_task_relevant(e, package.task_type)]
            relevance = len(relevant) / len(package.must_read) * 100
            if len(relevant) < len(package.must_read):
                reasons.append(
                    f"{len(package.must_read) - len(relevant)} of {len(package.must_read)} "
                    "files are not tied to the task type or request"
                )
        else:
            relevance = 0.0

        actionability = 0.0
        if package.acceptance_criteria:
            actionability += 50.0
            expected = set(EXPECTED_CRITERIA[package.task_type])
            if expected & set(package.acceptance_criteria):
                actionability += 50.0
            else:
                reasons.append(f"No acceptance criterion fits a {package.task_type.value} task")
        else:
            reasons.append("No acceptance criteria")

        return QualityBreakdown(completeness, relevance, actionability), reasons

    async def evaluate(self, package: ContextPackage) -> QualityReport:
        breakdown, reasons = self.score(package)
        score = int(round(breakdown.weighted_total))
        method = "deterministic"
        rationale: str | None = None

        if self._oracle is not None:
            judgment = await self._judge(self._oracle, package)
            if judgment is not None:
                score = int(round((score + judgment.score) / 2))
                method = "blended"
                rationale = judgment.rationale

        verdict = Verdict.PASS if score >= self.threshold else Verdict.BLOCK
        if verdict == Verdict.BLOCK:
            reasons.append(f"Score {score} is below the threshold of {self.threshold}")
        return QualityReport(
            score=score,
            verdict=verdict,
            breakdown=breakdown,
            reasons=reasons,
            method=method,
            oracle_rationale=rationale,
        )

    async def _judge(self, oracle: Oracle, package: ContextPackage) -> OracleJudgment | None:
        try:
            return await with_retries(
                lambda: asyncio.wait_for(oracle.judge(package, JUDGMENT_CRITERIA), timeout=self._timeout),
                attempts=self._retries,
                base_delay=self._retry_base_delay,
                retry_on=(OracleUnavailable, TimeoutError),
                label="oracle judgment",
            )
        except (OracleUnavailable, TimeoutError) as exc:
            logger.warning("Oracle judgment unavailable, using deterministic score: %s", exc)
            return None
