"""Error types and helpers for the forge pipeline."""

from __future__ import annotations

import re
from collections.abc import Sequence

import click


class ForgeError(click.ClickException):
    """Base class for pipeline failures surfaced to the user.

    Carries the task id and the last completed pipeline phase so that a retry
    can resume with the right context.
    """

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.phase = phase

    def format_message(self) -> str:
        context: list[str] = []
        if self.task_id:
            context.append(f"task {self.task_id}")
        if self.phase:
            context.append(f"last phase: {self.phase}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class OracleUnavailable(ForgeError):
    """The LLM oracle could not be reached or returned an unusable answer."""


class ArchiveUnavailable(ForgeError):
    """The archive could not serve a read or accept a write."""


class QualityBlocked(ForgeError):
    """A context package scored below the quality threshold."""

    def __init__(
        self,
        score: int,
        reasons: Sequence[str],
        *,
        task_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.score = score
        self.reasons = list(reasons)
        detail = "; ".join(self.reasons) if self.reasons else "no further detail"
        super().__init__(
            f"Context package blocked at quality score {score}/100: {detail}",
            task_id=task_id,
            phase=phase,
        )


class HumanSyncExpired(ForgeError):
    """A human sync question expired without an answer."""

    def __init__(
        self,
        request_id: str,
        *,
        task_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.request_id = request_id
        super().__init__(
            f"Human sync request {request_id} expired without a response; "
            "the task is blocked until it is prepared again",
            task_id=task_id,
            phase=phase,
        )


class MalformedExecutionReport(ForgeError):
    """An execution report is missing a field or carries an invalid value."""

    def __init__(
        self,
        field: str,
        detail: str,
        *,
        task_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.field = field
        super().__init__(
            f"Malformed execution report: field `{field}` {detail}",
            task_id=task_id,
            phase=phase,
        )


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class InvalidTransitionError(ValueError):
    """Raised when a task or human sync request is moved to a state it cannot reach."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True
    for e in _unwrap_exception_chain(exc):
        if "undefinedtableerror" in str(e).lower():
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `forge init-db`",
            "Or apply migrations with: `alembic upgrade head`",
        ]
    )
