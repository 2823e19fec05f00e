"""LangGraph preparation graph: classify, gather evidence, assemble, gate.

Flow::

    classify -> human_sync                     (ambiguous request)
    classify -> gather -> assemble -> quality_gate
    quality_gate -> END                        (pass)
    quality_gate -> revise -> assemble         (first block, one bounded retry)
    quality_gate -> human_sync -> END          (blocked again)

Discovery, the two extractors and the learning retriever run concurrently in
``gather``; any of them may fail without aborting the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from .budget import DEFAULT_TOTAL_TOKENS
from .classifier import Classification, ClassificationMethod, TaskClassifier, TaskType
from .discovery import DiscoveryMode, FileCandidate, FileDiscovery, ProjectIndex
from .errors import QualityBlocked
from .events import EventEmitter, EventType, emit, emit_quality_result, event_bus
from .extractors import ArchitectureExtractor, ArchitectureSummary, Convention, PatternExtractor
from .human_sync import HumanSync, SyncTrigger
from .keywords import extract_keywords
from .learning import HistoricalContext, LearningRetriever
from .models import HumanSyncRequest, Task
from .package import ContextPackage, assemble_package
from .patterns import PatternScore, PatternTracker, apply_recommendations
from .quality import QualityGate, QualityReport
from .state import TaskStatus

logger = logging.getLogger(__name__)

THIN_PACKAGE_FILES = 3
LOW_RELEVANCE_SCORE = 50.0


class PreparationState(TypedDict, total=False):
    task: Task
    index: ProjectIndex
    forced_type: TaskType | None
    mode: DiscoveryMode
    next_version: int

    classification: Classification
    sync_trigger: SyncTrigger | None
    keywords: list[str]

    candidates: list[FileCandidate]
    patterns: list[Convention]
    architecture: ArchitectureSummary
    history: HistoricalContext
    degraded: list[str]

    package: ContextPackage
    report: QualityReport
    attempts: list[tuple[ContextPackage, QualityReport]]
    blocks: int
    revised: bool

    sync_request: HumanSyncRequest | None


@dataclass
class PreparationOutcome:
    """Everything one preparation run produced, ready to be persisted."""

    task_id: str
    classification: Classification
    attempts: list[tuple[ContextPackage, QualityReport]] = field(default_factory=list)
    sync_request: HumanSyncRequest | None = None
    degraded_sources: list[str] = field(default_factory=list)

    @property
    def report(self) -> QualityReport | None:
        return self.attempts[-1][1] if self.attempts else None

    @property
    def package(self) -> ContextPackage | None:
        """The accepted package, if the last attempt passed the gate."""
        if self.attempts and self.attempts[-1][1].passed:
            return self.attempts[-1][0]
        return None

    @property
    def status(self) -> TaskStatus:
        if self.package is not None:
            return TaskStatus.PREPARED
        if self.sync_request is not None:
            return TaskStatus.AWAITING_HUMAN
        return TaskStatus.BLOCKED

    def require_package(self) -> ContextPackage:
        package = self.package
        if package is None:
            report = self.report
            raise QualityBlocked(
                report.score if report else 0,
                report.reasons if report else ["no package was assembled"],
                task_id=self.task_id,
                phase="quality_gate",
            )
        return package


class Preparer:
    """Runs the preparation graph for one task at a time."""

    def __init__(
        self,
        classifier: TaskClassifier,
        discovery: FileDiscovery,
        pattern_extractor: PatternExtractor,
        architecture_extractor: ArchitectureExtractor,
        retriever: LearningRetriever,
        gate: QualityGate,
        human_sync: HumanSync,
        *,
        max_keywords: int = 10,
        max_must_read: int = 15,
        max_index_files: int = 5000,
        content_sample_bytes: int = 65536,
        token_budget: int = DEFAULT_TOTAL_TOKENS,
        pattern_tracker: PatternTracker | None = None,
        bus: EventEmitter | None = None,
    ) -> None:
        self.classifier = classifier
        self.discovery = discovery
        self.pattern_extractor = pattern_extractor
        self.architecture_extractor = architecture_extractor
        self.retriever = retriever
        self.gate = gate
        self.human_sync = human_sync
        self.pattern_tracker = pattern_tracker
        self.max_keywords = max_keywords
        self.max_must_read = max_must_read
        self.max_index_files = max_index_files
        self.content_sample_bytes = content_sample_bytes
        self.token_budget = token_budget
        self.bus = bus or event_bus
        self._app = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(PreparationState)
        graph.add_node("classify", self.node_classify)
        graph.add_node("gather", self.node_gather)
        graph.add_node("assemble", self.node_assemble)
        graph.add_node("quality_gate", self.node_quality_gate)
        graph.add_node("revise", self.node_revise)
        graph.add_node("human_sync", self.node_human_sync)

        graph.set_entry_point("classify")
        graph.add_conditional_edges(
            "classify",
            self._route_after_classify,
            {"gather": "gather", "human_sync": "human_sync"},
        )
        graph.add_edge("gather", "assemble")
        graph.add_edge("assemble", "quality_gate")
        graph.add_conditional_edges(
            "quality_gate",
            self._route_after_gate,
            {"revise": "revise", "human_sync": "human_sync", "end": END},
        )
        graph.add_edge("revise", "assemble")
        graph.add_edge("human_sync", END)
        return graph.compile()

    async def prepare(
        self,
        task: Task,
        index: ProjectIndex | None = None,
        *,
        mode: DiscoveryMode = DiscoveryMode.NORMAL,
        first_version: int = 1,
        task_type: TaskType | None = None,
    ) -> PreparationOutcome:
        """Prepare ``task``; ``task_type`` skips classification (a human already chose)."""
        initial: PreparationState = {
            "task": task,
            "forced_type": task_type,
            "mode": mode,
            "next_version": first_version,
            "attempts": [],
            "blocks": 0,
            "revised": False,
            "degraded": [],
            "sync_request": None,
        }
        if index is not None:
            initial["index"] = index

        final_state = await self._app.ainvoke(initial)
        return PreparationOutcome(
            task_id=task.id,
            classification=final_state["classification"],
            attempts=list(final_state.get("attempts", [])),
            sync_request=final_state.get("sync_request"),
            degraded_sources=list(final_state.get("degraded", [])),
        )

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def node_classify(self, state: PreparationState) -> PreparationState:
        task = state["task"]
        forced = state.get("forced_type")
        if forced is not None:
            classification = Classification(
                task_type=forced,
                confidence=1.0,
                method=ClassificationMethod.HUMAN,
                rationale="Chosen by a human in response to a sync question.",
            )
            trigger = None
        else:
            classification = await self.classifier.classify(task.raw_request, task.project_path)
            trigger = self.human_sync.trigger_for(classification, raw_request=task.raw_request)

        await emit(
            EventType.TASK_CLASSIFIED,
            task_id=task.id,
            phase="classify",
            message=(
                f"Classified as {classification.task_type.value} "
                f"({classification.confidence:.2f}, {classification.method.value})"
            ),
            data=classification.to_dict(),
            bus=self.bus,
        )
        return {"classification": classification, "sync_trigger": trigger}

    async def node_gather(self, state: PreparationState) -> PreparationState:
        task = state["task"]
        task_type = state["classification"].task_type
        mode = state.get("mode", DiscoveryMode.NORMAL)
        started = time.perf_counter()

        index = state.get("index")
        if index is None:
            index = await ProjectIndex.ascan(
                task.project_path,
                max_files=self.max_index_files,
                sample_bytes=self.content_sample_bytes,
            )
        keywords = extract_keywords(task.raw_request, limit=self.max_keywords)

        sources = ("discovery", "patterns", "architecture", "history", "pattern_outcomes")
        results = await asyncio.gather(
            self.discovery.discover(task_type, index, keywords, mode=mode),
            self.pattern_extractor.extract(index),
            self.architecture_extractor.extract(index),
            self.retriever.retrieve(task.raw_request, task.project_path),
            self._recommended_patterns(task, task_type),
            return_exceptions=True,
        )

        fallbacks: dict[str, Any] = {
            "discovery": [],
            "patterns": [],
            "architecture": ArchitectureSummary(),
            "history": HistoricalContext(degraded_sources=("history",)),
            "pattern_outcomes": [],
        }
        gathered: dict[str, Any] = {}
        degraded = list(state.get("degraded", []))
        for name, result in zip(sources, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Preparation source %s failed for task %s: %s", name, task.id, result)
                degraded.append(name)
                gathered[name] = fallbacks[name]
                await emit(
                    EventType.SOURCE_DEGRADED,
                    task_id=task.id,
                    phase="gather",
                    message=f"{name} unavailable: {result}",
                    bus=self.bus,
                )
            else:
                gathered[name] = result

        history: HistoricalContext = gathered["history"]
        degraded.extend(s for s in history.degraded_sources if s not in degraded)

        await emit(
            EventType.PHASE_COMPLETED,
            task_id=task.id,
            phase="gather",
            message=f"{len(gathered['discovery'])} candidate files, {len(gathered['patterns'])} conventions",
            data={"degraded": degraded, "keywords": keywords},
            duration_ms=int((time.perf_counter() - started) * 1000),
            bus=self.bus,
        )
        return {
            "index": index,
            "keywords": keywords,
            "candidates": gathered["discovery"],
            "patterns": apply_recommendations(gathered["patterns"], gathered["pattern_outcomes"]),
            "architecture": gathered["architecture"],
            "history": history,
            "degraded": degraded,
        }

    async def _recommended_patterns(self, task: Task, task_type: TaskType) -> list[PatternScore]:
        if self.pattern_tracker is None:
            return []
        return await self.pattern_tracker.recommended(task.project_path, task_type.value)

    async def node_assemble(self, state: PreparationState) -> PreparationState:
        task = state["task"]
        version = state["next_version"]
        package = assemble_package(
            task_id=task.id,
            raw_request=task.raw_request,
            task_type=state["classification"].task_type,
            version=version,
            candidates=state.get("candidates", []),
            patterns=state.get("patterns", []),
            architecture=state.get("architecture", ArchitectureSummary()),
            history=state.get("history", HistoricalContext()),
            indexed_files=state["index"].files,
            include_low=state.get("mode") == DiscoveryMode.WIDENED,
            max_must_read=self.max_must_read,
            token_estimate=state["index"].token_estimate,
            token_budget=self.token_budget,
        )
        await emit(
            EventType.PACKAGE_ASSEMBLED,
            task_id=task.id,
            phase="assemble",
            message=f"Package v{version} with {len(package.must_read)} must-read files",
            data={"version": version, "package_id": package.id},
            bus=self.bus,
        )
        return {"package": package, "next_version": version + 1}

    async def node_quality_gate(self, state: PreparationState) -> PreparationState:
        task = state["task"]
        report = await self.gate.evaluate(state["package"])
        package = state["package"].with_score(report.score)
        await emit_quality_result(task.id, package.version, report, bus=self.bus)

        blocks = state.get("blocks", 0) + (0 if report.passed else 1)
        attempts = [*state.get("attempts", []), (package, report)]
        return {"package": package, "report": report, "attempts": attempts, "blocks": blocks}

    async def node_revise(self, state: PreparationState) -> PreparationState:
        """Re-run discovery once with a tightened or widened strategy."""
        task = state["task"]
        package = state["package"]
        report = state["report"]

        if len(package.must_read) >= self.max_must_read or (
            package.must_read and report.breakdown.relevance_score < LOW_RELEVANCE_SCORE
        ):
            mode = DiscoveryMode.TIGHTENED
        else:
            mode = DiscoveryMode.WIDENED

        history = state.get("history", HistoricalContext())
        co_modified = [(c.file_a, c.file_b) for c in history.co_modification_patterns]
        candidates = await self.discovery.discover(
            state["classification"].task_type,
            state["index"],
            state.get("keywords", []),
            mode=mode,
            co_modified=co_modified,
        )
        logger.info("Revising package for task %s with %s discovery", task.id, mode.value)
        await emit(
            EventType.PHASE_STARTED,
            task_id=task.id,
            phase="revise",
            message=f"Re-running discovery ({mode.value}) after a quality block",
            bus=self.bus,
        )
        return {"candidates": candidates, "mode": mode, "revised": True}

    async def node_human_sync(self, state: PreparationState) -> PreparationState:
        task = state["task"]
        trigger = state.get("sync_trigger")
        if trigger is None:
            trigger = self.human_sync.trigger_for(blocks=state.get("blocks", 0)) or SyncTrigger.REPEATED_BLOCK
        request = self.human_sync.generate_question(
            task,
            trigger,
            classification=state.get("classification"),
            quality=state.get("report"),
        )
        await emit(
            EventType.HUMAN_INPUT_REQUESTED,
            task_id=task.id,
            phase="human_sync",
            message=request.question,
            data={"request_id": request.id, "trigger": trigger.value, "options": list(request.options)},
            bus=self.bus,
        )
        return {"sync_request": request}

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _route_after_classify(self, state: PreparationState) -> str:
        return "human_sync" if state.get("sync_trigger") else "gather"

    def _route_after_gate(self, state: PreparationState) -> str:
        if state["report"].passed:
            return "end"
        if not state.get("revised") and state.get("blocks", 0) < self.human_sync.max_blocks:
            return "revise"
        return "human_sync"
