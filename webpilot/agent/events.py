from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    """Telemetry sink. Fire-and-forget: return values are ignored and errors never reach the run."""

    def emit(self, name: str, payload: dict[str, Any]) -> Any: ...


class NullEventSink:
    def emit(self, name: str, payload: dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    """Default sink: writes each event to the ``webpilot.agent.events`` logger at DEBUG."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        logger.log(self.level, 'EVENT %s %s', name, payload)


# Event schema


@dataclass
class Event:
    """Base event class for run telemetry."""

    name: ClassVar[str] = 'event'
    run_id: str
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunStarted(Event):
    name: ClassVar[str] = 'run.started'
    objective: str = ''
    attempt: int = 1
    plan_steps: int = 0


@dataclass
class PlanCreated(Event):
    name: ClassVar[str] = 'plan.created'
    confidence: float = 0.0
    steps: int = 0
    fallback: bool = False


@dataclass
class ActionResolved(Event):
    name: ClassVar[str] = 'action.resolved'
    call_id: str = ''
    action: str = ''
    state: str = ''
    error_kind: Optional[str] = None
    duration: Optional[float] = None


@dataclass
class TurnCompleted(Event):
    name: ClassVar[str] = 'turn.completed'
    turn: int = 0
    calls: int = 0
    finish_reason: str = ''
    total_tokens: int = 0


@dataclass
class TaskBoardUpdated(Event):
    name: ClassVar[str] = 'task_board.updated'
    tasks: list[dict[str, Any]] = field(default_factory=list)
    requires_approval: bool = False


@dataclass
class RunFinished(Event):
    name: ClassVar[str] = 'run.finished'
    status: str = ''
    finish_reason: str = ''
    stop_reason: Optional[str] = None
    total_steps: int = 0
    duration: float = 0.0


@dataclass
class RetryScheduled(Event):
    name: ClassVar[str] = 'retry.scheduled'
    adjusted_objective: str = ''
    rationale: str = ''


_pending_sink_tasks: set['asyncio.Future[Any]'] = set()


def emit(sink: Optional[EventSink], event: Event) -> None:
    """Send an event without ever letting the sink affect the caller."""
    if sink is None:
        return
    try:
        result = sink.emit(event.name, event.to_payload())
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            # hold a reference until the sink finishes
            _pending_sink_tasks.add(task)
            task.add_done_callback(_pending_sink_tasks.discard)
            task.add_done_callback(_log_sink_failure)
    except Exception:
        logger.debug(f'Telemetry sink failed for {event.name} (ignored)', exc_info=True)


def _log_sink_failure(task: 'asyncio.Future[Any]') -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug('Async telemetry sink failed (ignored)', exc_info=task.exception())
