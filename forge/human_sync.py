"""
Human-in-the-loop synchronization: when to ask, what to ask, and how answers resolve.

Lifecycle of a request::

    idle -> question_generated -> awaiting_response -> answered | expired

Expiry is terminal and distinct from cancelling a wait: a cancelled wait
leaves the request open so it can still be answered later, while an expired
request blocks the task until it is prepared again.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .classifier import Classification, TaskType, candidate_types
from .discovery import DiscoveryMode
from .errors import HumanSyncExpired, InvalidTransitionError
from .models import HumanSyncRequest, Task, as_utc, new_id, utcnow
from .quality import QualityReport

ABORT_OPTION = "abort"
BROADEN_OPTION = "re-prepare with broader discovery"
NARROW_OPTION = "re-prepare with narrower discovery"

ACTION_VERBS = frozenset(
    {
        "add", "build", "change", "configure", "convert", "create", "delete", "document",
        "extend", "fix", "implement", "improve", "migrate", "modify", "move", "refactor",
        "remove", "rename", "replace", "rewrite", "set", "support", "test", "update",
        "upgrade", "write",
    }
)
MIN_REQUEST_WORDS = 2


class SyncState(str, Enum):
    IDLE = "idle"
    QUESTION_GENERATED = "question_generated"
    AWAITING_RESPONSE = "awaiting_response"
    ANSWERED = "answered"
    EXPIRED = "expired"


class SyncTrigger(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    REPEATED_BLOCK = "repeated_block"
    VAGUE_REQUEST = "vague_request"


class SyncAction(str, Enum):
    REPREPARE = "reprepare"
    ABORT = "abort"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.QUESTION_GENERATED}),
    SyncState.QUESTION_GENERATED: frozenset({SyncState.AWAITING_RESPONSE}),
    SyncState.AWAITING_RESPONSE: frozenset({SyncState.ANSWERED, SyncState.EXPIRED}),
}


@dataclass
class SyncResolution:
    """What the pipeline should do after a human answered."""

    action: SyncAction
    option: str
    task_type: TaskType | None = None
    mode: DiscoveryMode = DiscoveryMode.NORMAL
    notes: str | None = None


def _move(request: HumanSyncRequest, new_state: SyncState) -> None:
    current = SyncState(request.state)
    if new_state not in _TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(
            f"Human sync request {request.id} cannot move from {current.value} to {new_state.value}"
        )
    request.state = new_state.value


def is_vague(raw_request: str) -> bool:
    words = re.findall(r"[a-z']+", raw_request.lower())
    if len(words) < MIN_REQUEST_WORDS:
        return True
    return not any(word in ACTION_VERBS for word in words)


class HumanSync:
    """Decides when human input is required and resolves the answers."""

    def __init__(
        self,
        *,
        confidence_floor: float = 0.5,
        max_blocks: int = 2,
        timeout_seconds: int = 3600,
        poll_interval: float = 2.0,
    ) -> None:
        self.confidence_floor = confidence_floor
        self.max_blocks = max_blocks
        self.timeout = timedelta(seconds=timeout_seconds)
        self.poll_interval = poll_interval

    def trigger_for(
        self,
        classification: Classification | None = None,
        blocks: int = 0,
        raw_request: str | None = None,
    ) -> SyncTrigger | None:
        if blocks >= self.max_blocks:
            return SyncTrigger.REPEATED_BLOCK
        if classification is not None and classification.confidence < self.confidence_floor:
            return SyncTrigger.LOW_CONFIDENCE
        if raw_request is not None and is_vague(raw_request):
            return SyncTrigger.VAGUE_REQUEST
        return None

    def generate_question(
        self,
        task: Task,
        trigger: SyncTrigger,
        *,
        classification: Classification | None = None,
        quality: QualityReport | None = None,
        now: datetime | None = None,
    ) -> HumanSyncRequest:
        """Create a request in ``question_generated`` with concrete options."""
        now = now or utcnow()
        context: dict = {"trigger": trigger.value}

        if trigger == SyncTrigger.REPEATED_BLOCK:
            score = quality.score if quality else None
            question = (
                f"The context package for \"{task.raw_request}\" was blocked twice"
                + (f" (last score {score}/100)" if score is not None else "")
                + ". How should preparation continue?"
            )
            options = [BROADEN_OPTION, NARROW_OPTION, ABORT_OPTION]
            if quality:
                context["quality"] = quality.to_dict()
        else:
            if classification is None:
                raise ValueError(f"{trigger.value} questions need the classification")
            types = candidate_types(classification)
            if trigger == SyncTrigger.VAGUE_REQUEST:
                question = (
                    f"The request \"{task.raw_request}\" is too vague to prepare. "
                    "Which kind of task is it?"
                )
            else:
                question = (
                    f"Classification of \"{task.raw_request}\" is uncertain "
                    f"({classification.task_type.value}, confidence {classification.confidence:.2f}). "
                    "Which kind of task is it?"
                )
            options = [t.value for t in types] + [ABORT_OPTION]
            context["classification"] = classification.to_dict()

        request = HumanSyncRequest(
            id=new_id(),
            task_id=task.id,
            trigger=trigger.value,
            question=question,
            options=options,
            state=SyncState.IDLE.value,
            context=context,
            created_at=now,
            expires_at=now + self.timeout,
        )
        _move(request, SyncState.QUESTION_GENERATED)
        return request

    def mark_awaiting(self, request: HumanSyncRequest) -> HumanSyncRequest:
        _move(request, SyncState.AWAITING_RESPONSE)
        return request

    def is_expired(self, request: HumanSyncRequest, now: datetime | None = None) -> bool:
        if request.state == SyncState.EXPIRED.value:
            return True
        if request.state == SyncState.ANSWERED.value:
            return False
        return (now or utcnow()) >= as_utc(request.expires_at)

    def expire(self, request: HumanSyncRequest) -> HumanSyncRequest:
        if request.state == SyncState.QUESTION_GENERATED.value:
            _move(request, SyncState.AWAITING_RESPONSE)
        _move(request, SyncState.EXPIRED)
        return request

    def resolve_option(self, request: HumanSyncRequest, option: str) -> str:
        """Match an answer against the offered options (text or 1-based index)."""
        choice = option.strip()
        if choice.isdigit():
            idx = int(choice) - 1
            if 0 <= idx < len(request.options):
                return request.options[idx]
        for candidate in request.options:
            if candidate.lower() == choice.lower():
                return candidate
        raise ValueError(
            f"'{option}' is not one of the offered options: {', '.join(request.options)}"
        )

    def answer(
        self,
        request: HumanSyncRequest,
        option: str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> SyncResolution:
        """Record a human answer; expired requests raise ``HumanSyncExpired``."""
        now = now or utcnow()
        if self.is_expired(request, now):
            if request.state != SyncState.EXPIRED.value:
                self.expire(request)
            raise HumanSyncExpired(request.id, task_id=request.task_id, phase="human_sync")

        chosen = self.resolve_option(request, option)
        if request.state == SyncState.QUESTION_GENERATED.value:
            _move(request, SyncState.AWAITING_RESPONSE)
        _move(request, SyncState.ANSWERED)
        request.response = chosen
        request.notes = notes
        request.responded_by = "human"
        request.answered_at = now
        return self.resolution_for(chosen, notes)

    def resolution_for(self, chosen: str, notes: str | None = None) -> SyncResolution:
        if chosen == ABORT_OPTION:
            return SyncResolution(action=SyncAction.ABORT, option=chosen, notes=notes)
        if chosen == BROADEN_OPTION:
            return SyncResolution(
                action=SyncAction.REPREPARE, option=chosen, mode=DiscoveryMode.WIDENED, notes=notes
            )
        if chosen == NARROW_OPTION:
            return SyncResolution(
                action=SyncAction.REPREPARE, option=chosen, mode=DiscoveryMode.TIGHTENED, notes=notes
            )
        return SyncResolution(
            action=SyncAction.REPREPARE, option=chosen, task_type=TaskType(chosen), notes=notes
        )

    async def await_response(
        self,
        request: HumanSyncRequest,
        refresh: Callable[[], Awaitable[HumanSyncRequest]],
        *,
        timeout: float | None = None,
    ) -> SyncResolution:
        """Poll until the request is answered or the wait runs out.

        On the deadline the request is expired and ``HumanSyncExpired`` is
        raised. Cancelling this coroutine leaves the request awaiting a
        response.
        """
        if request.state == SyncState.QUESTION_GENERATED.value:
            self.mark_awaiting(request)

        loop = asyncio.get_running_loop()
        budget = timeout if timeout is not None else self.timeout.total_seconds()
        deadline = loop.time() + budget

        current = request
        while True:
            if current.state == SyncState.ANSWERED.value and current.response:
                return self.resolution_for(current.response, current.notes)
            if current.state == SyncState.EXPIRED.value:
                break
            if loop.time() >= deadline or self.is_expired(current):
                if current.state != SyncState.EXPIRED.value:
                    self.expire(current)
                break
            await asyncio.sleep(self.poll_interval)
            current = await refresh()

        raise HumanSyncExpired(current.id, task_id=current.task_id, phase="human_sync")
