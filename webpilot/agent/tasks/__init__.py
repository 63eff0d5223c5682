from webpilot.agent.tasks.service import UPSERT_TASKS_ACTION, TaskBoard, register_task_board
from webpilot.agent.tasks.views import Task, TaskUpdate, UpsertTasksAction, UpsertTasksResult

__all__ = [
    'TaskBoard',
    'register_task_board',
    'UPSERT_TASKS_ACTION',
    'Task',
    'TaskUpdate',
    'UpsertTasksAction',
    'UpsertTasksResult',
]
