"""Pipeline orchestrator - wires settings into components and persists every step."""

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import db
from .archive import ArchiveKind, ArchiveRecord, SqlArchive, normalize_project_path
from .classifier import TaskClassifier, TaskType, apply_classification
from .config import settings
from .discovery import FileDiscovery
from .errors import ArchiveUnavailable, ForgeError, HumanSyncExpired, MalformedExecutionReport
from .events import EventType, emit, event_bus, persist_event_handler
from .extractors import ArchitectureExtractor, PatternExtractor
from .feedback import ExecutionReport, FeedbackRecorder
from .human_sync import HumanSync, SyncAction, SyncResolution
from .insights import InsightGenerator, InsightReport
from .learning import LearningRetriever
from .models import HumanSyncRequest, Task
from .oracle import OpencodeClient, OpencodeOracle, Oracle
from .package import ContextPackage
from .patterns import PatternTracker
from .preparation import PreparationOutcome, Preparer
from .quality import QualityGate
from .retry import with_retries
from .state import TaskStatus

console = Console()


def register_event_persistence() -> None:
    """Persist pipeline events to the execution log (idempotent)."""
    event_bus.remove_handler(persist_event_handler)
    event_bus.on_event(persist_event_handler)


@asynccontextmanager
async def open_oracle() -> AsyncGenerator[Oracle | None]:
    """Yield the configured oracle, or None when it is disabled."""
    if not settings.oracle_enabled:
        yield None
        return
    client = OpencodeClient(
        base_url=settings.opencode_api_url,
        directory=settings.opencode_directory,
        timeout_seconds=settings.oracle_timeout,
    )
    try:
        yield OpencodeOracle(
            client,
            agent=settings.oracle_agent,
            provider=settings.oracle_provider,
            classify_model=settings.oracle_classify_model,
            judge_model=settings.oracle_judge_model,
        )
    finally:
        await client.aclose()


def build_archive() -> SqlArchive:
    return SqlArchive(db.async_session_factory)


def build_human_sync() -> HumanSync:
    return HumanSync(
        confidence_floor=settings.confidence_floor,
        timeout_seconds=settings.human_sync_timeout,
        poll_interval=settings.human_sync_poll_interval,
    )


def build_preparer(archive: SqlArchive, oracle: Oracle | None = None) -> Preparer:
    retry_opts = {"retries": settings.max_retries, "retry_base_delay": settings.retry_base_delay}
    return Preparer(
        classifier=TaskClassifier(
            oracle,
            timeout=settings.oracle_timeout,
            ceiling=settings.heuristic_confidence_ceiling,
            **retry_opts,
        ),
        discovery=FileDiscovery(
            high_tier_limit=settings.high_tier_limit,
            min_relevance=settings.min_relevance,
        ),
        pattern_extractor=PatternExtractor(),
        architecture_extractor=ArchitectureExtractor(),
        retriever=LearningRetriever(
            archive, min_relevance=settings.min_history_relevance, **retry_opts
        ),
        gate=QualityGate(
            settings.quality_threshold, oracle, timeout=settings.oracle_timeout, **retry_opts
        ),
        human_sync=build_human_sync(),
        pattern_tracker=PatternTracker(archive, **retry_opts),
        max_keywords=settings.max_keywords,
        max_must_read=settings.max_must_read,
        max_index_files=settings.max_index_files,
        content_sample_bytes=settings.content_sample_bytes,
        token_budget=settings.context_token_budget,
    )


# =============================================================================
# Persistence of preparation results
# =============================================================================


async def _persist_outcome(task_id: str, outcome: PreparationOutcome) -> Task:
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, task_id)
        if task is None:
            raise ForgeError(f"Task not found: {task_id}")

        apply_classification(task, outcome.classification)
        if task.status == TaskStatus.INTAKE:
            first = TaskStatus.CLASSIFIED if outcome.attempts else TaskStatus.AWAITING_HUMAN
            await db.update_task_status(session, task, first, phase="classify")

        if outcome.attempts:
            await db.update_task_status(session, task, TaskStatus.PREPARING, phase="gather")
            for package, report in outcome.attempts:
                await db.save_package(session, task, package.to_dict(), quality_report=report.to_dict())

        if outcome.sync_request is not None:
            build_human_sync().mark_awaiting(outcome.sync_request)
            await db.add_sync_request(session, outcome.sync_request)

        phase = "quality_gate" if outcome.attempts else "classify"
        await db.update_task_status(session, task, outcome.status, phase=phase)
        metadata = dict(task.metadata_ or {})
        metadata["degraded_sources"] = outcome.degraded_sources
        task.metadata_ = metadata
        return task


async def _mark_expired(request: HumanSyncRequest) -> None:
    async with db.get_session() as session:
        stored = await db.get_sync_request(session, request.id)
        if stored is None:
            return
        if stored.is_open:
            build_human_sync().expire(stored)
        task = await db.get_task_by_id(session, stored.task_id)
        if task is not None and task.status == TaskStatus.AWAITING_HUMAN:
            await db.update_task_status(
                session, task, TaskStatus.BLOCKED, phase="human_sync", error_message="Human sync expired"
            )
    await emit(
        EventType.HUMAN_INPUT_EXPIRED,
        task_id=request.task_id,
        phase="human_sync",
        message=f"Question {request.id} expired without an answer",
    )


def _write_package(package: ContextPackage, output: Path | None) -> None:
    if output is None:
        return
    output.write_text(json.dumps(package.to_dict(), indent=2))
    console.print(f"[dim]Context package written to {output}[/dim]")


def _print_outcome(task: Task, outcome: PreparationOutcome) -> None:
    report = outcome.report
    classification = outcome.classification
    console.print(
        f"Type: [cyan]{classification.task_type.value}[/cyan] "
        f"(confidence {classification.confidence:.2f}, {classification.method.value})"
    )
    if outcome.package is not None and report is not None:
        package = outcome.package
        table = Table(title=f"Must read (package v{package.version}, score {report.score}/100)")
        table.add_column("Tier", style="cyan")
        table.add_column("Path")
        table.add_column("Reason", style="dim")
        for entry in package.must_read:
            table.add_row(entry.tier.value, entry.path, entry.reason)
        console.print(table)
        if package.acceptance_criteria:
            console.print("[bold]Acceptance criteria:[/bold]")
            for criterion in package.acceptance_criteria:
                console.print(f"  - {criterion}")
        for risk in package.risks:
            console.print(f"  [yellow]risk:[/yellow] {risk}")
        console.print(f"\n[green]Prepared task {task.id}[/green] (package id {package.id})")
    elif outcome.sync_request is not None:
        request = outcome.sync_request
        lines = [request.question, ""]
        lines.extend(f"  {i}. {option}" for i, option in enumerate(request.options, 1))
        lines.append("")
        lines.append(f"Answer with: forge respond {request.id} <option>")
        console.print(Panel("\n".join(lines), title="Human input needed", border_style="yellow"))
    elif report is not None:
        console.print(f"[red]Package blocked at {report.score}/100[/red]")
        for reason in report.reasons:
            console.print(f"  - {reason}")

    if outcome.degraded_sources:
        console.print(f"[yellow]Degraded sources: {', '.join(outcome.degraded_sources)}[/yellow]")


async def _wait_for_answer(request: HumanSyncRequest) -> SyncResolution | None:
    human_sync = build_human_sync()

    async def refresh() -> HumanSyncRequest:
        async with db.get_session() as session:
            stored = await db.get_sync_request(session, request.id)
            return stored if stored is not None else request

    console.print("[dim]Waiting for a response (Ctrl+C leaves the question open)...[/dim]")
    try:
        return await human_sync.await_response(request, refresh)
    except HumanSyncExpired as exc:
        await _mark_expired(request)
        console.print(f"[red]{exc.format_message()}[/red]")
        return None
    except asyncio.CancelledError:
        # Nobody is waiting any more; `forge respond` must continue preparation itself.
        await _set_awaited(request.id, False)
        raise


async def _set_awaited(request_id: str, awaited: bool) -> None:
    async with db.get_session() as session:
        stored = await db.get_sync_request(session, request_id)
        if stored is not None:
            stored.context = {**(stored.context or {}), "awaited": awaited}


# =============================================================================
# Commands
# =============================================================================


async def prepare(
    raw_request: str,
    project_path: str,
    *,
    wait: bool = False,
    output: Path | None = None,
) -> bool:
    """Prepare a context package for a new request; True when one was accepted."""
    register_event_persistence()
    project_path = normalize_project_path(project_path)
    console.print(
        Panel(f"[bold]{raw_request}[/bold]\n\nProject: {project_path}", title="New Task", border_style="blue")
    )

    async with db.get_session() as session:
        task = await db.create_task(session, raw_request, project_path)
    await emit(EventType.TASK_CREATED, task_id=task.id, phase="intake", message=raw_request)

    archive = build_archive()
    async with open_oracle() as oracle:
        outcome = await build_preparer(archive, oracle).prepare(task)
        if outcome.sync_request is not None and wait:
            outcome.sync_request.context = {**(outcome.sync_request.context or {}), "awaited": True}
        task = await _persist_outcome(task.id, outcome)
        _print_outcome(task, outcome)

        if outcome.sync_request is not None and wait:
            resolution = await _wait_for_answer(outcome.sync_request)
            if resolution is None:
                return False
            return await _continue_after_answer(task.id, resolution, archive, oracle, output)

    if outcome.package is not None:
        _write_package(outcome.package, output)
        return True
    return False


async def _continue_after_answer(
    task_id: str,
    resolution: SyncResolution,
    archive: SqlArchive,
    oracle: Oracle | None,
    output: Path | None,
) -> bool:
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, task_id)
        if task is None:
            raise ForgeError(f"Task not found: {task_id}")
        if resolution.action == SyncAction.ABORT:
            await db.update_task_status(
                session, task, TaskStatus.CANCELLED, phase="human_sync", error_message="Aborted by human"
            )
            console.print(f"[yellow]Task {task.id} cancelled[/yellow]")
            return True
        next_version = await db.next_package_version(session, task)

    task_type = resolution.task_type or (TaskType(task.task_type) if task.task_type else None)
    outcome = await build_preparer(archive, oracle).prepare(
        task,
        mode=resolution.mode,
        first_version=next_version,
        task_type=task_type,
    )
    task = await _persist_outcome(task.id, outcome)
    _print_outcome(task, outcome)
    if outcome.package is not None:
        _write_package(outcome.package, output)
        return True
    return False


async def respond(
    request_id: str,
    option: str,
    *,
    notes: str | None = None,
    output: Path | None = None,
) -> bool:
    """Answer an open human sync question and continue preparation."""
    register_event_persistence()
    human_sync = build_human_sync()

    async with db.get_session() as session:
        request = await db.get_sync_request(session, request_id)
        if request is None:
            raise ForgeError(f"Human sync request not found: {request_id}")
        task = await db.get_task_by_id(session, request.task_id)
        if not request.is_open:
            raise ForgeError(
                f"Human sync request {request_id} is already {request.state}",
                task_id=request.task_id,
                phase="human_sync",
            )
        expired = human_sync.is_expired(request)
        awaited = bool((request.context or {}).get("awaited"))
        if not expired:
            try:
                resolution = human_sync.answer(request, option, notes=notes)
            except ValueError as exc:
                raise ForgeError(str(exc), task_id=request.task_id, phase="human_sync") from exc
        project_path = task.project_path if task else None
        question = request.question

    if expired:
        await _mark_expired(request)
        console.print(f"[red]{HumanSyncExpired(request_id, task_id=request.task_id).format_message()}[/red]")
        return False

    await emit(
        EventType.HUMAN_INPUT_RECEIVED,
        task_id=request.task_id,
        phase="human_sync",
        message=f"Answered: {resolution.option}",
        data={"request_id": request_id, "option": resolution.option, "notes": notes},
    )

    archive = build_archive()
    if project_path:
        decision = ArchiveRecord(
            kind=ArchiveKind.DECISION.value,
            payload={
                "title": question,
                "rationale": f"Chose '{resolution.option}'" + (f": {notes}" if notes else ""),
                "task_id": request.task_id,
            },
            project_path=project_path,
            tags=["decision", "human-sync"],
        )
        try:
            await with_retries(
                lambda: archive.store(decision),
                attempts=settings.max_retries,
                base_delay=settings.retry_base_delay,
                retry_on=(ArchiveUnavailable,),
                label="decision write",
            )
        except ArchiveUnavailable as exc:
            console.print(f"[yellow]Decision not archived: {exc.message}[/yellow]")

    if awaited:
        console.print(f"[green]Answer recorded;[/green] the waiting `forge prepare` continues task {request.task_id}")
        return True

    async with open_oracle() as oracle:
        return await _continue_after_answer(request.task_id, resolution, archive, oracle, output)


async def expire_overdue_questions() -> int:
    """Expire questions whose deadline passed while nobody was waiting on them."""
    human_sync = build_human_sync()
    async with db.get_session() as session:
        overdue = [r for r in await db.get_open_sync_requests(session) if human_sync.is_expired(r)]
    for request in overdue:
        await _mark_expired(request)
    return len(overdue)


async def show_status(task_id: str | None = None) -> bool:
    """Print recent tasks, or one task in detail; False for blocked or waiting tasks."""
    await expire_overdue_questions()
    async with db.get_session() as session:
        if task_id is None:
            tasks = await db.list_tasks(session)
            if not tasks:
                console.print("[yellow]No tasks found[/yellow]")
                return True
            table = Table(title="Tasks")
            table.add_column("ID", style="cyan")
            table.add_column("Request")
            table.add_column("Type")
            table.add_column("Status")
            table.add_column("Created")
            for t in tasks:
                table.add_row(
                    t.id,
                    t.raw_request[:60],
                    t.task_type or "-",
                    t.status,
                    t.created_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)
            return True

        task = await db.get_task_by_id(session, task_id)
        if task is None:
            raise ForgeError(f"Task not found: {task_id}")

        confidence = f"{task.confidence:.2f}" if task.confidence is not None else "-"
        console.print(
            Panel(
                f"[bold]{task.raw_request}[/bold]\n\n"
                f"Status: [cyan]{task.status}[/cyan] (last phase: {task.phase})\n"
                f"Type: {task.task_type or 'unclassified'} "
                f"(confidence {confidence}, {task.classification_method or '-'})\n"
                f"Project: {task.project_path}\n"
                f"Created: {task.created_at.strftime('%Y-%m-%d %H:%M')}"
                + (f"\nError: {task.error_message}" if task.error_message else ""),
                title=f"Task: {task.id}",
            )
        )

        packages = await db.get_packages(session, task)
        if packages:
            table = Table(title="Context Packages")
            table.add_column("Version", style="cyan")
            table.add_column("Score")
            table.add_column("Verdict")
            table.add_column("Files")
            table.add_column("ID", style="dim")
            for record in packages:
                table.add_row(
                    str(record.version),
                    str(record.quality_score if record.quality_score is not None else "-"),
                    record.verdict or "-",
                    str(len(record.must_read_paths)),
                    record.id,
                )
            console.print(table)

        for request in await db.get_open_sync_requests(session, task):
            options = "\n".join(f"  {i}. {o}" for i, o in enumerate(request.options, 1))
            console.print(
                Panel(
                    f"{request.question}\n\n{options}\n\nExpires: {request.expires_at.strftime('%Y-%m-%d %H:%M')}",
                    title=f"Open question {request.id}",
                    border_style="yellow",
                )
            )

        return task.status not in (TaskStatus.BLOCKED, TaskStatus.AWAITING_HUMAN, TaskStatus.FAILED)


def load_report(path: Path) -> ExecutionReport:
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise MalformedExecutionReport("<root>", f"is not valid JSON ({exc.msg})") from exc
    return ExecutionReport.from_dict(data)


async def record_feedback(report_path: Path) -> bool:
    """Record an executor's report against the package it executed."""
    register_event_persistence()
    report = load_report(report_path)

    async with db.get_session() as session:
        task = await db.get_task_by_id(session, report.task_id)
        if task is None:
            raise MalformedExecutionReport("taskId", f"references unknown task {report.task_id}")
        record = await db.get_package(session, report.context_package_id)
        package = ContextPackage.from_dict(record.content) if record is not None else None
        project_path = task.project_path
        raw_request = task.raw_request

    archive = build_archive()
    recorder = FeedbackRecorder(
        archive,
        PatternTracker(archive, retries=settings.max_retries, retry_base_delay=settings.retry_base_delay),
        retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
    )
    feedback = await recorder.record(
        report, package, project_path=project_path, task_description=raw_request
    )

    async with db.get_session() as session:
        task = await db.get_task_by_id(session, report.task_id)
        if task is not None and task.status == TaskStatus.PREPARED:
            if feedback.success:
                await db.update_task_status(session, task, TaskStatus.COMPLETED, phase="feedback")
            else:
                category = feedback.failure_category.value if feedback.failure_category else "failed"
                await db.update_task_status(
                    session, task, TaskStatus.FAILED, phase="feedback", error_message=category
                )

    await emit(
        EventType.FEEDBACK_RECORDED,
        task_id=report.task_id,
        phase="feedback",
        message=f"Feedback archived as {feedback.archive_id}",
        data=feedback.accuracy.to_dict(),
    )

    table = Table(title="Must-read accuracy")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Outcome", "success" if feedback.success else f"failed ({feedback.failure_category.value})")
    table.add_row("Predicted", str(len(feedback.accuracy.predicted)))
    table.add_row("Actual", str(len(feedback.accuracy.actual)))
    table.add_row("Missed", ", ".join(feedback.accuracy.missed) or "-")
    table.add_row("Unnecessary", ", ".join(feedback.accuracy.unnecessary) or "-")
    console.print(table)
    if not feedback.pattern_outcomes_recorded:
        console.print(
            f"[yellow]Feedback {feedback.archive_id} was saved, but pattern outcomes were not; "
            "do not resubmit the report[/yellow]"
        )
    return True


def _print_insights(project_path: str, report: InsightReport) -> None:
    table = Table(title=f"Insights for {project_path}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Executions", str(report.total_executions))
    table.add_row("Success rate", f"{report.success_rate:.0%}")
    table.add_row("Compilation pass rate", f"{report.compilation_pass_rate:.0%}")
    table.add_row(
        "Test pass rate", "-" if report.test_pass_rate is None else f"{report.test_pass_rate:.0%}"
    )
    table.add_row("Mean unnecessary-file rate", f"{report.mean_unnecessary_rate:.0%}")
    table.add_row("Mean missed-file rate", f"{report.mean_missed_rate:.0%}")
    for mode, count in report.failure_modes.items():
        table.add_row(f"Failures: {mode}", str(count))
    for executor, stats in report.by_executor.items():
        table.add_row(f"Executor: {executor}", f"{stats.executions} runs, {stats.success_rate:.0%} success")
    console.print(table)

    if report.recommendations:
        console.print("\n[bold]Recommendations:[/bold]")
        icons = {"high": "[red]![/red]", "medium": "[yellow]>[/yellow]", "low": "[dim]o[/dim]"}
        for rec in report.recommendations:
            metric = rec.supporting_metric
            console.print(
                f"  {icons[rec.priority.value]} {rec.category.value.upper()}: {rec.recommendation} "
                f"[dim]({metric.name}={metric.value})[/dim]"
            )


async def show_insights(project_path: str) -> bool:
    project_path = normalize_project_path(project_path)
    archive = build_archive()
    generator = InsightGenerator(
        archive, PatternTracker(archive), sample_limit=settings.insight_sample_limit
    )
    report = await generator.generate(project_path)
    _print_insights(project_path, report)
    return True
