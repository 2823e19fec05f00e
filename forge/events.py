"""
Standardized event system for the preparation pipeline.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_CREATED = "task.created"
    TASK_CLASSIFIED = "task.classified"
    TASK_STATUS_CHANGED = "task.status_changed"

    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"
    SOURCE_DEGRADED = "phase.source_degraded"

    PACKAGE_ASSEMBLED = "package.assembled"
    QUALITY_PASSED = "quality.passed"
    QUALITY_BLOCKED = "quality.blocked"

    HUMAN_INPUT_REQUESTED = "human.input_requested"
    HUMAN_INPUT_RECEIVED = "human.input_received"
    HUMAN_INPUT_EXPIRED = "human.input_expired"

    FEEDBACK_RECORDED = "feedback.recorded"


@dataclass
class ForgeEvent:
    """Standardized event for the forge pipeline."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.TASK_CREATED
    task_id: str | None = None
    phase: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "task_id": self.task_id,
            "phase": self.phase,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


EventHandler = Callable[[ForgeEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: ForgeEvent) -> None:
        # A failing observer never fails the pipeline step that emitted the event.
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)


event_bus = EventEmitter()


async def emit(
    event_type: EventType,
    *,
    task_id: str | None = None,
    phase: str | None = None,
    message: str = "",
    data: dict[str, Any] | None = None,
    duration_ms: int | None = None,
    bus: EventEmitter | None = None,
) -> ForgeEvent:
    event = ForgeEvent(
        type=event_type,
        task_id=task_id,
        phase=phase,
        message=message,
        data=data or {},
        duration_ms=duration_ms,
    )
    logger.debug("%s %s", event_type.value, message)
    await (bus or event_bus).emit(event)
    return event


async def emit_quality_result(
    task_id: str, version: int, report: Any, *, bus: EventEmitter | None = None
) -> ForgeEvent:
    passed = report.passed
    return await emit(
        EventType.QUALITY_PASSED if passed else EventType.QUALITY_BLOCKED,
        task_id=task_id,
        phase="quality_gate",
        message=f"Package v{version} {'passed' if passed else 'blocked'} at {report.score}/100",
        data={"version": version, **report.to_dict()},
        bus=bus,
    )


async def persist_event_handler(event: ForgeEvent) -> None:
    """Handler that persists events to the execution log."""
    if not event.task_id:
        return

    from .db import get_session, get_task_by_id, log_event

    async with get_session() as session:
        task = await get_task_by_id(session, event.task_id)
        if task is None:
            return
        await log_event(
            session,
            task_id=task.id,
            phase=event.phase or "unknown",
            event=event.type.value,
            message=event.message,
            details=event.data,
            duration_ms=event.duration_ms,
        )
