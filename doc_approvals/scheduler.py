"""
SLA and Escalation Scheduler

Periodic scan of the task store. Each tick runs two phases:

1. Overdue marking: PENDING tasks whose due date has passed become OVERDUE.
2. Escalation: OVERDUE tasks past the grace period are reassigned to a
   holder of the escalation role and get a fresh due date.

Every task is handled in its own transaction and re-checked after being
reloaded, so a human action that lands first always wins and a failure on
one task never stops the batch. Running a tick twice at the same time is
a no-op the second time.
"""

import functools
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .clock import Clock, utc_now
from .config import EngineConfig
from .directory import Authorizer
from .errors import ConcurrencyConflictError
from .history import HistoryAction, HistoryLog
from .models import Task, TaskStatus
from .notifications import NotificationDispatcher, Notifier, Outbox
from .storage import StorageInterface
from .tasks import TaskStore

logger = logging.getLogger(__name__)


# Escalation target selection

class EscalationStrategy(ABC):
    """Chooses the new assignee of an escalated task"""

    @abstractmethod
    def choose(self, task: Task, candidates: List[str]) -> str:
        """Pick one of the candidates (never empty)"""
        pass


class FirstCandidateStrategy(EscalationStrategy):
    """Always the first role holder"""

    def choose(self, task: Task, candidates: List[str]) -> str:
        return candidates[0]


class RoundRobinStrategy(EscalationStrategy):
    """Rotates through role holders across escalations"""

    def __init__(self):
        self._position = 0
        self._lock = threading.Lock()

    def choose(self, task: Task, candidates: List[str]) -> str:
        with self._lock:
            choice = candidates[self._position % len(candidates)]
            self._position += 1
        return choice


class LeastLoadedStrategy(EscalationStrategy):
    """Role holder with the fewest open tasks; ties go to the earlier candidate"""

    def __init__(self, tasks: TaskStore):
        self.tasks = tasks

    def choose(self, task: Task, candidates: List[str]) -> str:
        loads = {user_id: self.tasks.count_open_for_assignee(user_id) for user_id in candidates}
        return min(candidates, key=lambda user_id: loads[user_id])


def build_strategy(name: str, tasks: TaskStore) -> EscalationStrategy:
    """Strategy for the escalation_strategy configuration value"""
    if name == "first":
        return FirstCandidateStrategy()
    if name == "round_robin":
        return RoundRobinStrategy()
    if name == "least_loaded":
        return LeastLoadedStrategy(tasks)
    raise ValueError(f"Unknown escalation strategy: {name}")


@dataclass
class TickReport:
    """What one scheduler tick did"""
    started_at: datetime
    marked_overdue: int = 0
    escalated: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0

    @property
    def changed(self) -> int:
        return self.marked_overdue + self.escalated

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        return data


# Outcome of handling one task
_CHANGED = "changed"
_SKIPPED = "skipped"

TaskHandler = Callable[[Task, datetime, Outbox], Optional[str]]


class SlaScheduler:
    """
    Overdue detection and escalation.

    run_tick(now) is the deterministic entry point used by tests and by an
    external supervisor; start() runs it on a daemon thread instead.
    """

    def __init__(
        self,
        storage: StorageInterface,
        authorizer: Authorizer,
        notifier: Optional[Notifier] = None,
        config: Optional[EngineConfig] = None,
        clock: Clock = utc_now,
        tasks: Optional[TaskStore] = None,
        history: Optional[HistoryLog] = None,
        strategy: Optional[EscalationStrategy] = None,
        executor: Optional[Executor] = None,
        inline_notifications: bool = False,
    ):
        self.storage = storage
        self.authorizer = authorizer
        self.config = config or EngineConfig()
        self.clock = clock
        self.tasks = tasks or TaskStore(storage)
        self.history = history or HistoryLog(storage)
        self.strategy = strategy or build_strategy(self.config.escalation_strategy, self.tasks)
        self.dispatcher = NotificationDispatcher(notifier, executor, inline=inline_notifications,
                                                 max_workers=self.config.notification_workers)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # Tick

    def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run both phases once as of now (defaults to the clock)"""
        now = now or self.clock()
        report = TickReport(started_at=now)

        if not self.config.sla_enabled:
            logger.debug("SLA processing disabled, skipping tick")
            return report

        self._scan(TaskStatus.PENDING, now, self._mark_overdue, now, report)

        if self.config.escalation_enabled:
            cutoff = now - timedelta(hours=self.config.escalation_grace_hours)
            candidates = self._escalation_candidates()
            if candidates is not None:
                self._scan(TaskStatus.OVERDUE, cutoff, functools.partial(self._escalate, candidates),
                           now, report)

        if report.changed or report.failed or report.conflicts:
            logger.info(
                "SLA tick: %d marked overdue, %d escalated, %d skipped, %d failed",
                report.marked_overdue, report.escalated, report.skipped, report.failed,
                extra={'action': 'sla_tick', 'extra': report.to_dict()},
            )
        return report

    def _escalation_candidates(self) -> Optional[List[str]]:
        role_name = self.config.escalation_role_name
        try:
            return list(self.authorizer.current_role_holders(role_name))
        except Exception as e:
            logger.error("Could not resolve holders of escalation role %s: %s", role_name, e,
                         exc_info=True)
            return None

    def _scan(self, status: TaskStatus, cutoff: datetime, handler: TaskHandler,
              now: datetime, report: TickReport) -> None:
        """Page through tasks in status due before cutoff, one transaction per task"""
        batch_size = self.config.scheduler_batch_size
        after = None
        for _ in range(self.config.scheduler_max_batches_per_tick):
            page = self.tasks.find_due_before(status, cutoff, batch_size, after)
            for task in page:
                outcome = self._handle(task.id, handler, now, report)
                if outcome == _CHANGED:
                    if status is TaskStatus.PENDING:
                        report.marked_overdue += 1
                    else:
                        report.escalated += 1
                elif outcome == _SKIPPED:
                    report.skipped += 1
            if len(page) < batch_size:
                return
            after = (page[-1].due_date, page[-1].id)

        logger.warning("Batch limit reached while scanning %s tasks; continuing next tick",
                       status.value)

    def _handle(self, task_id: str, handler: TaskHandler, now: datetime,
                report: TickReport) -> Optional[str]:
        """Apply handler to a freshly loaded task, retrying on version conflicts"""
        attempts = self.config.scheduler_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            outbox = Outbox()
            try:
                with self.storage.atomic():
                    task = self.tasks.find(task_id)
                    outcome = handler(task, now, outbox) if task else None
            except ConcurrencyConflictError:
                logger.warning("Task %s changed during scheduler update (attempt %d of %d)",
                               task_id, attempt, attempts, extra={'task_id': task_id})
                continue
            except Exception as e:
                report.failed += 1
                logger.error("Scheduler failed on task %s: %s", task_id, e, exc_info=True,
                             extra={'task_id': task_id})
                return None
            self.dispatcher.flush(outbox)
            return outcome

        report.conflicts += 1
        return None

    # Phase handlers; each re-checks the reloaded task before changing it

    def _mark_overdue(self, task: Task, now: datetime, outbox: Outbox) -> Optional[str]:
        if task.status is not TaskStatus.PENDING or task.due_date >= now:
            return None

        task.status = TaskStatus.OVERDUE
        task.updated_at = now
        self.tasks.update(task)
        self.history.record(
            task.instance_id, HistoryAction.TASK_OVERDUE,
            f"Task '{task.title}' assigned to {task.assigned_to} is overdue",
            None, now,
            metadata={'task_id': task.id, 'assigned_to': task.assigned_to, 'due_date': task.due_date},
        )
        outbox.task_overdue(task.assigned_to, task)
        return _CHANGED

    def _escalate(self, role_holders: List[str], task: Task, now: datetime,
                  outbox: Outbox) -> Optional[str]:
        cutoff = now - timedelta(hours=self.config.escalation_grace_hours)
        if task.status is not TaskStatus.OVERDUE or task.due_date >= cutoff:
            return None

        previous = task.assigned_to
        candidates = [user_id for user_id in role_holders if user_id != previous]
        if not candidates:
            logger.warning("No %s available to escalate task %s",
                           self.config.escalation_role_name, task.id,
                           extra={'task_id': task.id, 'instance_id': task.instance_id})
            return _SKIPPED

        new_assignee = self.strategy.choose(task, candidates)
        task.assigned_to = new_assignee
        task.due_date = now + timedelta(hours=self.config.escalation_extension_hours)
        task.escalation_count += 1
        task.updated_at = now
        if self.config.escalation_resets_status:
            task.status = TaskStatus.PENDING
        self.tasks.update(task)

        self.history.record(
            task.instance_id, HistoryAction.TASK_ESCALATED,
            f"Task escalated from {previous} to {new_assignee}",
            None, now,
            metadata={'task_id': task.id, 'previous_assignee': previous,
                      'new_assignee': new_assignee},
        )
        outbox.task_assigned(new_assignee, task)
        outbox.task_overdue(previous, task)
        return _CHANGED

    # Background runner

    def start(self) -> None:
        """Run ticks on a daemon thread until stop() is called"""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="sla-scheduler")
            self._thread.daemon = True
            self._thread.start()
        logger.info("SLA scheduler started (every %d minutes)", self.config.scheduler_interval_minutes)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread:
            thread.join(timeout=timeout)
        logger.info("SLA scheduler stopped")

    def close(self) -> None:
        """Stop the background runner and drain queued notifications"""
        self.stop()
        self.dispatcher.close()

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run_loop(self) -> None:
        if self._stop_event.wait(self.config.scheduler_initial_delay_minutes * 60):
            return
        while True:
            try:
                self.run_tick()
            except Exception as e:
                logger.error("SLA tick failed: %s", e, exc_info=True)
            if self._stop_event.wait(self.config.scheduler_interval_minutes * 60):
                return
