"""Async database connection and operations for the forge pipeline."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    Base,
    ContextPackageRecord,
    ExecutionLog,
    HumanSyncRequest,
    Task,
    utcnow,
)
from .state import TERMINAL_STATUSES, TaskStatus, ensure_transition

if settings.sqlite_path is not None:
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)

# Create async engine and session factory
engine = create_async_engine(settings.database_url, echo=settings.database_echo, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(
                    schema_not_initialized_message(exc)
                ) from exc
            raise


# =============================================================================
# Task Operations
# =============================================================================


async def get_task_by_id(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def create_task(
    session: AsyncSession,
    raw_request: str,
    project_path: str,
    metadata: dict[str, Any] | None = None,
) -> Task:
    """Create a new task in the intake state."""
    task = Task(
        raw_request=raw_request,
        project_path=project_path,
        status=TaskStatus.INTAKE.value,
        phase="intake",
        metadata_=metadata or {},
    )
    session.add(task)
    await session.flush()
    return task


async def list_tasks(
    session: AsyncSession,
    *,
    project_path: str | None = None,
    limit: int = 20,
) -> list[Task]:
    query = select(Task).order_by(Task.created_at.desc()).limit(limit)
    if project_path:
        query = query.where(Task.project_path == project_path)
    result = await session.execute(query)
    return list(result.scalars().all())


async def update_task_status(
    session: AsyncSession,
    task: Task,
    new_status: str,
    *,
    phase: str | None = None,
    error_message: str | None = None,
) -> Task:
    """Validate and apply a status change, with logging."""
    old_status = task.status
    ensure_transition(old_status, new_status)
    task.status = new_status
    task.updated_at = utcnow()
    if phase:
        task.phase = phase

    if error_message:
        task.error_message = error_message

    if new_status in TERMINAL_STATUSES:
        task.completed_at = utcnow()

    if old_status != new_status:
        log = ExecutionLog(
            task_id=task.id,
            phase="status_change",
            event="status_updated",
            message=f"Status changed from {old_status} to {new_status}",
            details={"old_status": old_status, "new_status": new_status},
        )
        session.add(log)

    return task


# =============================================================================
# Context Package Operations
# =============================================================================


async def next_package_version(session: AsyncSession, task: Task) -> int:
    result = await session.execute(
        select(func.max(ContextPackageRecord.version)).where(ContextPackageRecord.task_id == task.id)
    )
    return int(result.scalar() or 0) + 1


async def save_package(
    session: AsyncSession,
    task: Task,
    content: dict[str, Any],
    *,
    quality_report: dict[str, Any] | None = None,
) -> ContextPackageRecord:
    """Append a package version; existing versions are never rewritten."""
    record = ContextPackageRecord(
        id=content["id"],
        task_id=task.id,
        version=content["version"],
        content=content,
        quality_score=(quality_report or {}).get("score"),
        verdict=(quality_report or {}).get("verdict"),
        quality_report=quality_report,
    )
    session.add(record)
    await session.flush()
    return record


async def get_packages(session: AsyncSession, task: Task) -> list[ContextPackageRecord]:
    """All package versions for a task, oldest first."""
    result = await session.execute(
        select(ContextPackageRecord)
        .where(ContextPackageRecord.task_id == task.id)
        .order_by(ContextPackageRecord.version)
    )
    return list(result.scalars().all())


async def get_package(session: AsyncSession, package_id: str) -> ContextPackageRecord | None:
    result = await session.execute(
        select(ContextPackageRecord).where(ContextPackageRecord.id == package_id)
    )
    return result.scalar_one_or_none()


# =============================================================================
# Human Sync Operations
# =============================================================================


async def add_sync_request(session: AsyncSession, request: HumanSyncRequest) -> HumanSyncRequest:
    session.add(request)
    await session.flush()
    return request


async def get_sync_request(session: AsyncSession, request_id: str) -> HumanSyncRequest | None:
    result = await session.execute(select(HumanSyncRequest).where(HumanSyncRequest.id == request_id))
    return result.scalar_one_or_none()


async def get_open_sync_requests(session: AsyncSession, task: Task | None = None) -> list[HumanSyncRequest]:
    """Get the unanswered, unexpired questions for a task (or for every task)."""
    query = select(HumanSyncRequest).where(
        HumanSyncRequest.state.in_(("question_generated", "awaiting_response"))
    )
    if task is not None:
        query = query.where(HumanSyncRequest.task_id == task.id)
    result = await session.execute(query.order_by(HumanSyncRequest.created_at))
    return list(result.scalars().all())


# =============================================================================
# Execution Log
# =============================================================================


async def log_event(
    session: AsyncSession,
    task: Task | None = None,
    phase: str | None = None,
    event: str | None = None,
    *,
    task_id: str | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> ExecutionLog:
    """Log an execution event."""
    resolved_task_id = task_id or (task.id if task else None)
    if not resolved_task_id or not phase or not event:
        raise ValueError("log_event requires task/task_id, phase, and event.")

    log = ExecutionLog(
        task_id=resolved_task_id,
        phase=phase,
        event=event,
        message=message,
        details=details,
        duration_ms=duration_ms,
    )
    session.add(log)
    await session.flush()
    return log


async def get_execution_log(session: AsyncSession, task: Task, limit: int = 50) -> list[ExecutionLog]:
    result = await session.execute(
        select(ExecutionLog)
        .where(ExecutionLog.task_id == task.id)
        .order_by(ExecutionLog.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
