"""
Per-run task board exposed to the model as the ``upsert_tasks`` action.

The board enforces a single in-progress task: after every merge, any task in
progress beyond the first (in board order) is demoted to pending.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from webpilot.agent.events import EventSink, TaskBoardUpdated, emit
from webpilot.agent.tasks.views import Task, TaskUpdate, UpsertTasksAction, UpsertTasksResult
from webpilot.controller.registry.service import Registry

logger = logging.getLogger(__name__)

UPSERT_TASKS_ACTION = 'upsert_tasks'

UPSERT_TASKS_DESCRIPTION = (
    'Create or update the task list for this run. Tasks are merged by id; omitted fields keep their value. '
    'Keep exactly one task in_progress at a time and mark tasks completed as you finish them.'
)


class TaskBoard:
    """Ordered task list for one run. Not shared across runs and not persisted."""

    def __init__(
        self,
        run_id: str = 'run',
        event_sink: Optional[EventSink] = None,
        on_change: Optional[Callable[[list[Task]], None]] = None,
    ):
        self.run_id = run_id
        self.event_sink = event_sink
        self.on_change = on_change
        self._tasks: dict[str, Task] = {}
        self.approval_requested = False

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def snapshot(self) -> list[dict[str, Any]]:
        return [t.model_dump() for t in self._tasks.values()]

    @property
    def in_progress(self) -> Optional[Task]:
        return next((t for t in self._tasks.values() if t.status == 'in_progress'), None)

    def upsert_tasks(self, tasks: Iterable[TaskUpdate | dict[str, Any]], request_approval: bool = False) -> UpsertTasksResult:
        created = 0
        for raw in tasks:
            update = raw if isinstance(raw, TaskUpdate) else TaskUpdate.model_validate(raw)
            existing = self._tasks.get(update.id)
            if existing is None:
                self._tasks[update.id] = Task(
                    id=update.id,
                    title=update.title or update.id,
                    description=update.description,
                    status=update.status or 'pending',
                )
                created += 1
                continue
            changes = update.model_dump(exclude_unset=True, exclude_none=True, exclude={'id'})
            self._tasks[update.id] = existing.model_copy(update=changes)

        demoted = self._enforce_single_in_progress()
        if demoted:
            logger.debug(f'Task board demoted {demoted} to pending (only one task may be in progress)')

        if request_approval:
            self.approval_requested = True

        result = UpsertTasksResult(
            created=created,
            count=len(self._tasks),
            requires_approval=bool(request_approval),
            tasks=self.tasks,
        )
        self._publish(result)
        return result

    def _enforce_single_in_progress(self) -> list[str]:
        seen = False
        demoted: list[str] = []
        for task_id, task in self._tasks.items():
            if task.status != 'in_progress':
                continue
            if not seen:
                seen = True
                continue
            self._tasks[task_id] = task.model_copy(update={'status': 'pending'})
            demoted.append(task_id)
        return demoted

    def _publish(self, result: UpsertTasksResult) -> None:
        if self.on_change is not None:
            try:
                self.on_change(self.tasks)
            except Exception:
                logger.debug('Task board on_change callback failed (ignored)', exc_info=True)
        emit(
            self.event_sink,
            TaskBoardUpdated(run_id=self.run_id, tasks=self.snapshot(), requires_approval=result.requires_approval),
        )


def register_task_board(registry: Registry, board: TaskBoard) -> Registry:
    """Return a copy of ``registry`` with the board's ``upsert_tasks`` action added."""
    extended = registry.extended()

    @extended.action(UPSERT_TASKS_DESCRIPTION, param_model=UpsertTasksAction, name=UPSERT_TASKS_ACTION)
    async def upsert_tasks(params: UpsertTasksAction) -> dict[str, Any]:
        result = board.upsert_tasks(params.tasks, request_approval=params.request_approval)
        return {
            'success': True,
            'created': result.created,
            'count': result.count,
            'requires_approval': result.requires_approval,
            'tasks': [t.model_dump() for t in result.tasks],
        }

    return extended
