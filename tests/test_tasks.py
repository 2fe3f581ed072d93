"""
Tests for the task store
"""

from datetime import datetime, timedelta, timezone

import pytest

from doc_approvals.errors import ConcurrencyConflictError, NotFoundError
from doc_approvals.models import Task, TaskStatus
from doc_approvals.tasks import TaskStore

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_task(task_id, assigned_to="alice", due_in_hours=24, status=TaskStatus.PENDING,
              instance_id="inst-1", step_id="step-1", step_order=1):
    return Task(
        id=task_id,
        created_at=T0,
        updated_at=T0,
        instance_id=instance_id,
        step_id=step_id,
        step_order=step_order,
        assigned_to=assigned_to,
        due_date=T0 + timedelta(hours=due_in_hours),
        status=status,
        title="Review",
    )


@pytest.fixture
def tasks(storage):
    return TaskStore(storage)


class TestTaskStore:

    def test_add_and_get(self, tasks):
        task = tasks.add(make_task("t1"))
        assert task.version == 1

        loaded = tasks.get("t1")
        assert loaded == task
        assert loaded.created_date == T0

    def test_get_missing(self, tasks):
        with pytest.raises(NotFoundError):
            tasks.get("missing")
        assert tasks.find("missing") is None

    def test_update_bumps_version(self, tasks):
        tasks.add(make_task("t1"))
        task = tasks.get("t1")
        task.status = TaskStatus.OVERDUE
        tasks.update(task)

        assert task.version == 2
        assert tasks.get("t1").status == TaskStatus.OVERDUE

    def test_stale_update_conflicts(self, tasks):
        tasks.add(make_task("t1"))
        first = tasks.get("t1")
        second = tasks.get("t1")

        first.status = TaskStatus.OVERDUE
        tasks.update(first)

        second.status = TaskStatus.COMPLETED
        with pytest.raises(ConcurrencyConflictError) as excinfo:
            tasks.update(second)
        assert excinfo.value.entity_id == "t1"
        assert tasks.get("t1").status == TaskStatus.OVERDUE

    def test_queries(self, tasks):
        tasks.add(make_task("t1", assigned_to="alice", due_in_hours=5))
        tasks.add(make_task("t2", assigned_to="alice", due_in_hours=1, status=TaskStatus.OVERDUE))
        tasks.add(make_task("t3", assigned_to="bob", step_id="step-2", step_order=2))
        tasks.add(make_task("t4", assigned_to="alice", instance_id="inst-2",
                            status=TaskStatus.COMPLETED))

        assert [t.id for t in tasks.list_for_instance("inst-1")] == ["t1", "t2", "t3"]
        assert [t.id for t in tasks.list_for_step("inst-1", "step-2")] == ["t3"]
        assert [t.id for t in tasks.list_for_assignee("alice")] == ["t2", "t1", "t4"]
        assert [t.id for t in tasks.list_for_assignee("alice", TaskStatus.PENDING)] == ["t1"]
        assert tasks.count_open_for_assignee("alice") == 2
        assert tasks.count_open_for_assignee("bob") == 1

    def test_due_before_scans(self, tasks):
        tasks.add(make_task("late", due_in_hours=-2))
        tasks.add(make_task("later", due_in_hours=-1))
        tasks.add(make_task("future", due_in_hours=3))
        tasks.add(make_task("old-overdue", due_in_hours=-30, status=TaskStatus.OVERDUE))

        pending = tasks.find_pending_due_before(T0, limit=10)
        assert [t.id for t in pending] == ["late", "later"]

        page = tasks.find_pending_due_before(T0, limit=1, after=(pending[0].due_date, pending[0].id))
        assert [t.id for t in page] == ["later"]

        overdue = tasks.find_overdue_due_before(T0 - timedelta(hours=24), limit=10)
        assert [t.id for t in overdue] == ["old-overdue"]
