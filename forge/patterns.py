"""
Pattern outcome tracking: which project conventions held up in real executions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from .archive import Archive, ArchiveKind, ArchiveRecord, normalize_project_path
from .errors import ArchiveUnavailable
from .extractors import Convention
from .retry import with_retries

logger = logging.getLogger(__name__)

SUCCESS_RATE_THRESHOLD = 0.7
MIN_USES = 3
STATS_SAMPLE = 500


@dataclass
class PatternScore:
    pattern: str
    success_count: int = 0
    failure_count: int = 0
    contexts: set[str] = field(default_factory=set)  # task types where it succeeded

    @property
    def uses(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.uses if self.uses else 0.0

    @property
    def recommended(self) -> bool:
        return self.success_rate >= SUCCESS_RATE_THRESHOLD and self.uses >= MIN_USES

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 2),
            "contexts": sorted(self.contexts),
        }


def aggregate(payloads: Iterable[dict]) -> dict[str, PatternScore]:
    """Fold ``pattern_outcome`` payloads into per-pattern scores."""
    scores: dict[str, PatternScore] = {}
    for payload in payloads:
        name = payload.get("pattern")
        if not name:
            continue
        score = scores.setdefault(name, PatternScore(pattern=name))
        if payload.get("outcome") == "success":
            score.success_count += 1
            if payload.get("task_type"):
                score.contexts.add(payload["task_type"])
        else:
            score.failure_count += 1
    return scores


class PatternTracker:
    """Appends one ``pattern_outcome`` record per convention per execution."""

    def __init__(self, archive: Archive, *, retries: int = 3, retry_base_delay: float = 0.5) -> None:
        self._archive = archive
        self._retries = retries
        self._retry_base_delay = retry_base_delay

    async def record(
        self,
        patterns: Iterable[str],
        project_path: str,
        *,
        success: bool,
        task_type: str,
    ) -> list[str]:
        outcome = "success" if success else "failure"
        ids: list[str] = []
        for pattern in patterns:
            record = ArchiveRecord(
                kind=ArchiveKind.PATTERN_OUTCOME.value,
                payload={"pattern": pattern, "outcome": outcome, "task_type": task_type},
                project_path=project_path,
                tags=["pattern-outcome", outcome, task_type],
            )
            ids.append(
                await with_retries(
                    lambda record=record: self._archive.store(record),
                    attempts=self._retries,
                    base_delay=self._retry_base_delay,
                    retry_on=(ArchiveUnavailable,),
                    label="pattern outcome write",
                )
            )
        logger.info("Recorded %s for %d pattern(s) in %s", outcome, len(ids), project_path)
        return ids

    async def stats(self, project_path: str) -> dict[str, PatternScore]:
        project_path = normalize_project_path(project_path)
        records = await self._archive.search(
            "", project_path=project_path, kind=ArchiveKind.PATTERN_OUTCOME.value, limit=STATS_SAMPLE
        )
        return aggregate(r.payload for r in records if normalize_project_path(r.project_path) == project_path)

    async def recommended(self, project_path: str, task_type: str, limit: int = 5) -> list[PatternScore]:
        scores = await self.stats(project_path)
        eligible = [
            s
            for s in scores.values()
            if s.recommended and (task_type in s.contexts or not s.contexts)
        ]
        eligible.sort(key=lambda s: (-s.success_rate, s.pattern))
        return eligible[:limit]


def apply_recommendations(conventions: Iterable[Convention], recommended: Iterable[PatternScore]) -> list[Convention]:
    """Put proven conventions first, annotated with their success rate; the rest keep their order."""
    rates = {score.pattern: score.success_rate for score in recommended}
    conventions = list(conventions)
    proven = sorted((c for c in conventions if c.name in rates), key=lambda c: -rates[c.name])
    return [replace(c, success_rate=round(rates[c.name], 2)) for c in proven] + [
        c for c in conventions if c.name not in rates
    ]
