"""
Test suite for SLA detection and escalation

Time is simulated with the manual clock; the scheduler never sleeps in
these tests except for the background runner test.
"""

import logging
import threading
from datetime import timedelta

import pytest

from conftest import make_step
from doc_approvals.config import EngineConfig
from doc_approvals.errors import ConcurrencyConflictError
from doc_approvals.history import HistoryAction
from doc_approvals.models import ApprovalPolicy, TaskStatus
from doc_approvals.scheduler import (
    FirstCandidateStrategy, LeastLoadedStrategy, RoundRobinStrategy, SlaScheduler,
    build_strategy,
)


@pytest.fixture
def make_scheduler(storage, directory, notifier, clock, engine):
    """Scheduler sharing the engine's stores, with config overrides"""
    def _make(**overrides):
        config = EngineConfig(_env_file=None, **overrides)
        return SlaScheduler(storage, directory, notifier=notifier, config=config, clock=clock,
                            tasks=engine.tasks, history=engine.history,
                            inline_notifications=True)
    return _make


@pytest.fixture
def single_task(engine, register):
    """Instance with one PENDING task for alice due in 24h"""
    template = register(make_step(1, approvers=["alice"], sla_hours=24))
    instance = engine.create_instance(template.id, "doc-1", "ivan")
    return instance.tasks[0]


def history_of(engine, task, action):
    return [e for e in engine.history.list_by_action(task.instance_id, action)
            if e.metadata.get("task_id") == task.id]


class TestOverdueDetection:

    def test_scenario_b(self, engine, scheduler, single_task, clock, notifier):
        now = clock.advance(hours=25)  # due one hour ago

        report = scheduler.run_tick(now)

        assert report.marked_overdue == 1
        task = engine.get_task(single_task.id)
        assert task.status == TaskStatus.OVERDUE
        assert task.assigned_to == "alice"

        entries = history_of(engine, task, HistoryAction.TASK_OVERDUE)
        assert len(entries) == 1
        assert entries[0].performer is None
        notifier.notify_task_overdue.assert_called_once()
        assert notifier.notify_task_overdue.call_args.args[0] == "alice"

    def test_not_yet_due(self, engine, scheduler, single_task, clock):
        report = scheduler.run_tick(clock.advance(hours=23))
        assert report.marked_overdue == 0
        assert engine.get_task(single_task.id).status == TaskStatus.PENDING

    def test_due_exactly_now_is_not_overdue(self, engine, scheduler, single_task, clock):
        scheduler.run_tick(single_task.due_date)
        assert engine.get_task(single_task.id).status == TaskStatus.PENDING

    def test_uses_clock_when_no_time_given(self, engine, scheduler, single_task, clock):
        clock.advance(hours=30)
        assert scheduler.run_tick().marked_overdue == 1

    def test_overdue_task_of_completed_work_is_ignored(self, engine, scheduler, single_task, clock):
        engine.submit_task_action(single_task.id, "alice", "APPROVE")
        report = scheduler.run_tick(clock.advance(hours=48))
        assert report.marked_overdue == 0
        assert engine.get_task(single_task.id).status == TaskStatus.COMPLETED


class TestEscalation:

    def test_scenario_c(self, engine, scheduler, single_task, clock, notifier):
        scheduler.run_tick(clock.advance(hours=24, minutes=30))
        now = clock.advance(hours=24, minutes=30)  # overdue since now - 25h

        report = scheduler.run_tick(now)

        assert report.escalated == 1
        task = engine.get_task(single_task.id)
        assert task.assigned_to == "mary"
        assert task.due_date == now + timedelta(hours=24)
        assert task.escalation_count == 1
        assert task.status == TaskStatus.OVERDUE

        entries = history_of(engine, task, HistoryAction.TASK_ESCALATED)
        assert len(entries) == 1
        assert entries[0].metadata["previous_assignee"] == "alice"
        assert entries[0].metadata["new_assignee"] == "mary"
        assert entries[0].details == "Task escalated from alice to mary"

        assert notifier.notify_task_assigned.call_args.args[0] == "mary"
        assert notifier.notify_task_overdue.call_args.args[0] == "alice"

    def test_within_grace_period_not_escalated(self, engine, scheduler, single_task, clock):
        scheduler.run_tick(clock.advance(hours=25))
        report = scheduler.run_tick(clock.advance(hours=22))
        assert report.escalated == 0
        assert engine.get_task(single_task.id).assigned_to == "alice"

    def test_escalated_task_can_be_completed_by_new_assignee(
            self, engine, make_scheduler, single_task, clock):
        scheduler = make_scheduler(escalation_resets_status=True)
        scheduler.run_tick(clock.advance(hours=25))
        scheduler.run_tick(clock.advance(hours=25))

        task = engine.get_task(single_task.id)
        assert task.status == TaskStatus.PENDING
        assert task.assigned_to == "mary"

        instance = engine.submit_task_action(task.id, "mary", "APPROVE")
        assert instance.is_terminal

    def test_previous_assignee_is_never_chosen(self, engine, scheduler, register, clock):
        template = register(make_step(1, approvers=["mary"], sla_hours=24))
        task = engine.create_instance(template.id, "doc-1", "ivan").tasks[0]

        scheduler.run_tick(clock.advance(hours=25))
        scheduler.run_tick(clock.advance(hours=25))

        assert engine.get_task(task.id).assigned_to == "mike"

    def test_no_candidates_is_skipped_with_warning(
            self, engine, make_scheduler, single_task, clock, caplog):
        scheduler = make_scheduler(escalation_role_name="AUDITOR")
        scheduler.run_tick(clock.advance(hours=25))

        with caplog.at_level(logging.WARNING, logger="doc_approvals.scheduler"):
            report = scheduler.run_tick(clock.advance(hours=25))

        assert report.escalated == 0
        assert report.skipped == 1
        assert engine.get_task(single_task.id).assigned_to == "alice"
        assert not history_of(engine, single_task, HistoryAction.TASK_ESCALATED)
        assert "No AUDITOR available" in caplog.text

    def test_escalation_disabled(self, engine, make_scheduler, single_task, clock):
        scheduler = make_scheduler(escalation_enabled=False)
        scheduler.run_tick(clock.advance(hours=25))
        report = scheduler.run_tick(clock.advance(hours=48))

        assert report.escalated == 0
        assert engine.get_task(single_task.id).status == TaskStatus.OVERDUE

    def test_sla_disabled(self, engine, make_scheduler, single_task, clock):
        scheduler = make_scheduler(sla_enabled=False)
        report = scheduler.run_tick(clock.advance(hours=100))
        assert report.changed == 0
        assert engine.get_task(single_task.id).status == TaskStatus.PENDING


class TestIdempotence:

    def test_second_tick_changes_nothing(self, engine, scheduler, register, storage, clock):
        template = register(make_step(1, approvers=["alice", "bob"], policy=ApprovalPolicy.ALL))
        engine.create_instance(template.id, "doc-1", "ivan")
        clock.advance(hours=25)
        scheduler.run_tick()
        now = clock.advance(hours=25)

        first = scheduler.run_tick(now)
        snapshot = storage.get_all_data()
        history_count = engine.history.count()

        second = scheduler.run_tick(now)

        assert first.escalated == 2
        assert second.changed == 0
        assert storage.get_all_data() == snapshot
        assert engine.history.count() == history_count


class TestConcurrency:

    def test_human_action_wins_over_stale_scan(self, engine, scheduler, single_task, clock,
                                               monkeypatch):
        now = clock.advance(hours=25)
        stale_page = engine.tasks.find_pending_due_before(now, 10)
        engine.submit_task_action(single_task.id, "alice", "APPROVE")

        monkeypatch.setattr(scheduler.tasks, "find_due_before",
                            lambda status, cutoff, limit, after=None:
                            stale_page if status is TaskStatus.PENDING and after is None else [])
        report = scheduler.run_tick(now)

        assert report.marked_overdue == 0
        assert engine.get_task(single_task.id).status == TaskStatus.COMPLETED
        assert not history_of(engine, single_task, HistoryAction.TASK_OVERDUE)

    def test_conflict_is_retried(self, engine, scheduler, single_task, clock, monkeypatch):
        real_update = scheduler.tasks.update
        calls = []

        def flaky_update(task):
            calls.append(task.id)
            if len(calls) == 1:
                raise ConcurrencyConflictError("task", task.id)
            return real_update(task)

        monkeypatch.setattr(scheduler.tasks, "update", flaky_update)
        report = scheduler.run_tick(clock.advance(hours=25))

        assert report.marked_overdue == 1
        assert report.conflicts == 0
        assert len(calls) == 2
        assert len(history_of(engine, single_task, HistoryAction.TASK_OVERDUE)) == 1

    def test_retries_exhausted_leaves_task_for_next_tick(
            self, engine, make_scheduler, single_task, clock, monkeypatch):
        scheduler = make_scheduler(scheduler_conflict_retries=2)

        def always_conflicts(task):
            raise ConcurrencyConflictError("task", task.id)

        with monkeypatch.context() as patch:
            patch.setattr(scheduler.tasks, "update", always_conflicts)
            report = scheduler.run_tick(clock.advance(hours=25))

        assert report.conflicts == 1
        assert engine.get_task(single_task.id).status == TaskStatus.PENDING

        assert scheduler.run_tick().marked_overdue == 1

    def test_one_failing_task_does_not_stop_the_batch(
            self, engine, scheduler, register, clock, monkeypatch):
        template = register(make_step(1, approvers=["alice", "bob"], policy=ApprovalPolicy.ALL))
        instance = engine.create_instance(template.id, "doc-1", "ivan")
        broken = next(t for t in instance.tasks if t.assigned_to == "alice")
        real_update = scheduler.tasks.update

        def update(task):
            if task.id == broken.id:
                raise RuntimeError("store unavailable")
            return real_update(task)

        monkeypatch.setattr(scheduler.tasks, "update", update)
        report = scheduler.run_tick(clock.advance(hours=25))

        assert report.failed == 1
        assert report.marked_overdue == 1
        statuses = {t.assigned_to: t.status for t in engine.tasks.list_for_instance(instance.id)}
        assert statuses == {"alice": TaskStatus.PENDING, "bob": TaskStatus.OVERDUE}


class TestPagination:

    @pytest.fixture
    def five_tasks(self, engine, register):
        template = register(make_step(1, approvers=["alice"], sla_hours=24))
        return [engine.create_instance(template.id, f"doc-{i}", "ivan").tasks[0] for i in range(5)]

    def test_pages_until_done(self, engine, make_scheduler, five_tasks, clock):
        scheduler = make_scheduler(scheduler_batch_size=2)
        report = scheduler.run_tick(clock.advance(hours=25))
        assert report.marked_overdue == 5

    def test_batch_limit_defers_rest_to_next_tick(self, engine, make_scheduler, five_tasks, clock):
        scheduler = make_scheduler(scheduler_batch_size=2, scheduler_max_batches_per_tick=1)
        now = clock.advance(hours=25)

        assert scheduler.run_tick(now).marked_overdue == 2
        assert scheduler.run_tick(now).marked_overdue == 2
        assert scheduler.run_tick(now).marked_overdue == 1
        assert scheduler.run_tick(now).marked_overdue == 0


class TestStrategies:

    def test_first_candidate(self, single_task):
        assert FirstCandidateStrategy().choose(single_task, ["mary", "mike"]) == "mary"

    def test_round_robin_rotates(self, single_task):
        strategy = RoundRobinStrategy()
        chosen = [strategy.choose(single_task, ["mary", "mike"]) for _ in range(3)]
        assert chosen == ["mary", "mike", "mary"]

    def test_least_loaded_prefers_idle_holder(self, engine, register, single_task):
        template = register(make_step(1, approvers=["mary"]), name="Busy")
        engine.create_instance(template.id, "doc-9", "ivan")

        strategy = LeastLoadedStrategy(engine.tasks)
        assert strategy.choose(single_task, ["mary", "mike"]) == "mike"
        # Ties go to the earlier candidate
        assert strategy.choose(single_task, ["mike", "ada"]) == "mike"

    def test_round_robin_spreads_escalations(self, engine, make_scheduler, register, clock):
        template = register(make_step(1, approvers=["alice", "bob"], policy=ApprovalPolicy.ALL))
        engine.create_instance(template.id, "doc-1", "ivan")
        scheduler = make_scheduler(escalation_strategy="round_robin")

        scheduler.run_tick(clock.advance(hours=25))
        scheduler.run_tick(clock.advance(hours=25))

        assignees = {t.assigned_to for t in engine.tasks.list_for_assignee("mary")}
        assignees |= {t.assigned_to for t in engine.tasks.list_for_assignee("mike")}
        assert assignees == {"mary", "mike"}

    def test_build_strategy(self, engine):
        assert isinstance(build_strategy("first", engine.tasks), FirstCandidateStrategy)
        assert isinstance(build_strategy("round_robin", engine.tasks), RoundRobinStrategy)
        assert isinstance(build_strategy("least_loaded", engine.tasks), LeastLoadedStrategy)
        with pytest.raises(ValueError):
            build_strategy("random", engine.tasks)


class TestBackgroundRunner:

    def test_start_and_stop(self, make_scheduler, monkeypatch):
        scheduler = make_scheduler(scheduler_initial_delay_minutes=0)
        ticked = threading.Event()
        monkeypatch.setattr(scheduler, "run_tick", lambda: ticked.set())

        scheduler.start()
        try:
            assert ticked.wait(timeout=5)
            assert scheduler.is_running()
        finally:
            scheduler.stop()

        assert not scheduler.is_running()

    def test_stop_before_first_tick(self, make_scheduler, monkeypatch):
        scheduler = make_scheduler()
        calls = []
        monkeypatch.setattr(scheduler, "run_tick", lambda: calls.append(1))

        scheduler.start()
        scheduler.stop()

        assert calls == []
        assert not scheduler.is_running()
