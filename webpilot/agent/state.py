"""
Run-scoped mutable state shared by the tool loop, the task board and the coordinator.
"""

from __future__ import annotations
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Optional

logger = logging.getLogger(__name__)


class AgentStatus(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MAX_STEPS_REACHED = "MAX_STEPS_REACHED"
    ABORTED = "ABORTED"


TERMINAL_STATES = {
    AgentStatus.STOPPED,
    AgentStatus.COMPLETED,
    AgentStatus.FAILED,
    AgentStatus.MAX_STEPS_REACHED,
    AgentStatus.ABORTED,
}


def agent_log(level: int, run_id: str, step: int, message: str, **kwargs) -> None:
    try:
        logger.log(level, message, extra={"run_id": run_id, "step": step}, **kwargs)
    except Exception:
        logger.log(level, message, **kwargs)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:10]}"


@dataclass
class RunState:
    objective: str
    run_id: str = field(default_factory=new_run_id)
    status: AgentStatus = AgentStatus.PENDING
    n_turns: int = 0
    # Counters consumed by the stop guard
    consecutive_failures: int = 0
    total_tokens: int = 0
    # Targets of consecutive navigation calls, newest last
    navigation_targets: Deque[str] = field(default_factory=lambda: deque(maxlen=32))
    final_state: Optional[str] = None
    last_resolved_url: Optional[str] = None
    last_error: Optional[str] = None
    # Task board snapshot, republished after every upsert
    tasks: list[Any] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def set_status(self, status: AgentStatus) -> None:
        if self.is_terminal and status is not self.status:
            logger.debug(f"Ignoring status change {self.status.value} -> {status.value} on finished run {self.run_id}")
            return
        self.status = status

    def record_call(self, succeeded: bool, error: Optional[str] = None) -> None:
        if succeeded:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            self.last_error = error

    def record_navigation(self, target: Optional[str]) -> None:
        self.navigation_targets.append(target or "")

    def repeated_navigation_count(self) -> int:
        """Length of the run of identical targets at the end of the navigation streak."""
        if not self.navigation_targets:
            return 0
        last = self.navigation_targets[-1]
        if not last:
            return 0
        count = 0
        for target in reversed(self.navigation_targets):
            if target != last:
                break
            count += 1
        return count
