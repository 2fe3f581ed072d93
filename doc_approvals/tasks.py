"""
Task Store

Persistence of approver tasks. Every update is a versioned write: a task
read by one caller and changed by another in between fails with
ConcurrencyConflictError instead of silently overwriting.
"""

from datetime import datetime
from typing import List, Optional

from .errors import ConcurrencyConflictError, NotFoundError
from .models import Task, TaskStatus
from .storage import ScanCursor, StorageInterface


class TaskStore:
    """Versioned storage of tasks with the queries the engine and scheduler need"""

    TABLE = "workflow_tasks"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def add(self, task: Task) -> Task:
        """Insert a new task; its version becomes 1"""
        version = self.storage.compare_and_save(self.TABLE, task.id, task.to_dict(), None)
        if version is None:
            raise ConcurrencyConflictError("task", task.id)
        task.version = version
        return task

    def update(self, task: Task) -> Task:
        """
        Write back a task that was read at task.version.

        Raises:
            ConcurrencyConflictError: If the task changed since it was read
        """
        version = self.storage.compare_and_save(self.TABLE, task.id, task.to_dict(), task.version)
        if version is None:
            raise ConcurrencyConflictError("task", task.id)
        task.version = version
        return task

    def find(self, task_id: str) -> Optional[Task]:
        data = self.storage.load(self.TABLE, task_id)
        return Task.from_dict(data) if data else None

    def get(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def list_for_instance(self, instance_id: str) -> List[Task]:
        """Tasks of an instance ordered by step, then creation"""
        tasks = self._find({'instance_id': instance_id})
        tasks.sort(key=lambda t: (t.step_order, t.created_at, t.id))
        return tasks

    def list_for_step(self, instance_id: str, step_id: str) -> List[Task]:
        tasks = self._find({'instance_id': instance_id, 'step_id': step_id})
        tasks.sort(key=lambda t: (t.created_at, t.id))
        return tasks

    def list_for_assignee(self, user_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        """Tasks assigned to a user, soonest due first"""
        filters = {'assigned_to': user_id}
        if status is not None:
            filters['status'] = status
        tasks = self._find(filters)
        tasks.sort(key=lambda t: (t.due_date, t.id))
        return tasks

    def count_open_for_assignee(self, user_id: str) -> int:
        """Number of PENDING or OVERDUE tasks currently held by a user"""
        return sum(
            self.storage.count(self.TABLE, {'assigned_to': user_id, 'status': status})
            for status in (TaskStatus.PENDING, TaskStatus.OVERDUE)
        )

    def find_due_before(self, status: TaskStatus, cutoff: datetime, limit: int,
                        after: Optional[ScanCursor] = None) -> List[Task]:
        """
        One page of tasks in the given status whose due date is strictly
        before cutoff, ordered by (due_date, id).

        Args:
            status: Task status to scan
            cutoff: Exclusive upper bound on due_date
            limit: Page size
            after: (due_date, id) of the last task of the previous page
        """
        rows = self.storage.find_before(
            self.TABLE, {'status': status}, 'due_date', cutoff, limit, after
        )
        return [Task.from_dict(row) for row in rows]

    def find_pending_due_before(self, cutoff: datetime, limit: int,
                                after: Optional[ScanCursor] = None) -> List[Task]:
        return self.find_due_before(TaskStatus.PENDING, cutoff, limit, after)

    def find_overdue_due_before(self, cutoff: datetime, limit: int,
                                after: Optional[ScanCursor] = None) -> List[Task]:
        return self.find_due_before(TaskStatus.OVERDUE, cutoff, limit, after)

    def _find(self, filters) -> List[Task]:
        return [Task.from_dict(row) for row in self.storage.find(self.TABLE, filters)]
