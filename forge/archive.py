"""
Archive client: append-only store/search of cross-task memory.

Every search is scoped to a single project. ``project_path`` is a required
keyword argument on the protocol, and each implementation normalizes it and
applies it as a filter.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import ArchiveUnavailable, is_schema_missing_error, schema_not_initialized_message
from .keywords import tokenize
from .models import ArchiveRecordRow, as_utc, utcnow


class ArchiveKind(str, Enum):
    EXECUTION_FEEDBACK = "execution_feedback"
    DECISION = "decision"
    PATTERN_OUTCOME = "pattern_outcome"


@dataclass
class ArchiveRecord:
    """One archive entry; ``id`` is assigned on store."""

    kind: str
    payload: dict[str, Any]
    project_path: str
    tags: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    id: str | None = None


class Archive(Protocol):
    async def store(self, record: ArchiveRecord) -> str: ...

    async def search(
        self,
        query: str,
        *,
        project_path: str,
        kind: str | None = None,
        limit: int = 20,
    ) -> list[ArchiveRecord]: ...


def normalize_project_path(project_path: str) -> str:
    """Canonical absolute form of a project path; rejects empty paths."""
    if not project_path or not str(project_path).strip():
        raise ValueError("project_path is required for every archive operation")
    return str(Path(project_path).expanduser().resolve())


def project_relative_path(path: str, project_path: str) -> str | None:
    """Project-relative form of ``path``, or None when it points outside the project."""
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            return candidate.resolve().relative_to(normalize_project_path(project_path)).as_posix()
        except ValueError:
            return None
    if ".." in candidate.parts:
        return None
    return candidate.as_posix()


def searchable_text(record: ArchiveRecord) -> str:
    return " ".join([record.kind, " ".join(record.tags), json.dumps(record.payload, default=str)])


class SqlArchive:
    """Archive persisted in the ``archive_records`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def store(self, record: ArchiveRecord) -> str:
        row = ArchiveRecordRow(
            kind=record.kind,
            project_path=normalize_project_path(record.project_path),
            payload=record.payload,
            tags=list(record.tags),
            content=searchable_text(record).lower(),
            created_at=record.timestamp,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise ArchiveUnavailable(_describe(exc)) from exc
        record.id = row.id
        return row.id

    async def search(
        self,
        query: str,
        *,
        project_path: str,
        kind: str | None = None,
        limit: int = 20,
    ) -> list[ArchiveRecord]:
        stmt = select(ArchiveRecordRow).where(
            ArchiveRecordRow.project_path == normalize_project_path(project_path)
        )
        if kind:
            stmt = stmt.where(ArchiveRecordRow.kind == kind)
        terms = [t for t in tokenize(query) if len(t) > 2]
        if terms:
            stmt = stmt.where(or_(*(ArchiveRecordRow.content.contains(t, autoescape=True) for t in terms)))
        stmt = stmt.order_by(ArchiveRecordRow.created_at.desc()).limit(limit)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise ArchiveUnavailable(_describe(exc)) from exc

        return [
            ArchiveRecord(
                id=row.id,
                kind=row.kind,
                payload=row.payload,
                project_path=row.project_path,
                tags=list(row.tags or []),
                timestamp=as_utc(row.created_at),
            )
            for row in rows
        ]


def _describe(exc: SQLAlchemyError) -> str:
    if is_schema_missing_error(exc):
        return schema_not_initialized_message(exc)
    return f"Archive database error: {exc}"
