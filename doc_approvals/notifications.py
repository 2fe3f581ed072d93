"""
Notification Module

Best-effort delivery of workflow events to users. The engine and the
scheduler never call a notifier while holding a transaction: they collect
messages in an Outbox and hand it to the NotificationDispatcher once the
state change has been committed. Delivery failures are logged and dropped.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from .clock import Clock, utc_now
from .models import Instance, Task
from .storage import StorageInterface, encode_value

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Notification collaborator"""

    @abstractmethod
    def notify_task_assigned(self, user_id: str, task: Task) -> None:
        pass

    @abstractmethod
    def notify_task_overdue(self, user_id: str, task: Task) -> None:
        pass

    def notify_task_completed(self, user_id: str, task: Task) -> None:
        pass

    def notify_workflow_completed(self, user_id: str, instance: Instance) -> None:
        pass

    def notify_workflow_cancelled(self, user_id: str, instance: Instance) -> None:
        pass


def _describe(subject: Any) -> Dict[str, Any]:
    if isinstance(subject, Task):
        return {
            'task_id': subject.id,
            'instance_id': subject.instance_id,
            'title': subject.title,
            'status': subject.status.value,
            'due_date': encode_value(subject.due_date),
        }
    return {
        'instance_id': subject.id,
        'document_ref': subject.document_ref,
        'title': subject.title,
        'status': subject.status.value,
    }


class LogNotifier(Notifier):
    """Writes notifications to the log instead of sending them"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def _emit(self, event: str, user_id: str, subject: Any) -> None:
        self.log.info("Notify %s: %s", user_id, event,
                      extra={'action': event, 'extra': {'recipient': user_id, **_describe(subject)}})

    def notify_task_assigned(self, user_id: str, task: Task) -> None:
        self._emit("task_assigned", user_id, task)

    def notify_task_overdue(self, user_id: str, task: Task) -> None:
        self._emit("task_overdue", user_id, task)

    def notify_task_completed(self, user_id: str, task: Task) -> None:
        self._emit("task_completed", user_id, task)

    def notify_workflow_completed(self, user_id: str, instance: Instance) -> None:
        self._emit("workflow_completed", user_id, instance)

    def notify_workflow_cancelled(self, user_id: str, instance: Instance) -> None:
        self._emit("workflow_cancelled", user_id, instance)


class WebhookNotifier(Notifier):
    """Posts every event as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: int = 30, clock: Clock = utc_now):
        self.url = url
        self.timeout = timeout
        self.clock = clock

    def _post(self, event: str, user_id: str, subject: Any) -> None:
        payload = {
            "event_id": str(uuid.uuid4()),
            "event": event,
            "recipient_id": user_id,
            "timestamp": encode_value(self.clock()),
            "data": _describe(subject),
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()

    def notify_task_assigned(self, user_id: str, task: Task) -> None:
        self._post("task_assigned", user_id, task)

    def notify_task_overdue(self, user_id: str, task: Task) -> None:
        self._post("task_overdue", user_id, task)

    def notify_task_completed(self, user_id: str, task: Task) -> None:
        self._post("task_completed", user_id, task)

    def notify_workflow_completed(self, user_id: str, instance: Instance) -> None:
        self._post("workflow_completed", user_id, instance)

    def notify_workflow_cancelled(self, user_id: str, instance: Instance) -> None:
        self._post("workflow_cancelled", user_id, instance)


class InAppNotifier(Notifier):
    """Stores notifications for display in the user's inbox"""

    TABLE = "in_app_notifications"

    def __init__(self, storage: StorageInterface, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock

    def _store(self, event: str, user_id: str, subject: Any) -> None:
        now = self.clock()
        record = {
            "id": str(uuid.uuid4()),
            "created_at": encode_value(now),
            "updated_at": encode_value(now),
            "recipient_id": user_id,
            "event": event,
            "read": False,
            "data": _describe(subject),
        }
        self.storage.save(self.TABLE, record["id"], record)

    def inbox(self, user_id: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {'recipient_id': user_id}
        if unread_only:
            filters['read'] = False
        return sorted(self.storage.find(self.TABLE, filters), key=lambda r: r['created_at'])

    def mark_as_read(self, notification_id: str) -> bool:
        record = self.storage.load(self.TABLE, notification_id)
        if not record:
            return False
        record['read'] = True
        self.storage.save(self.TABLE, notification_id, record)
        return True

    def notify_task_assigned(self, user_id: str, task: Task) -> None:
        self._store("task_assigned", user_id, task)

    def notify_task_overdue(self, user_id: str, task: Task) -> None:
        self._store("task_overdue", user_id, task)

    def notify_task_completed(self, user_id: str, task: Task) -> None:
        self._store("task_completed", user_id, task)

    def notify_workflow_completed(self, user_id: str, instance: Instance) -> None:
        self._store("workflow_completed", user_id, instance)

    def notify_workflow_cancelled(self, user_id: str, instance: Instance) -> None:
        self._store("workflow_cancelled", user_id, instance)


class Outbox:
    """Notifications collected during one operation, sent after commit"""

    def __init__(self):
        self._messages: List[Tuple[str, str, Any]] = []

    def add(self, event: str, user_id: str, subject: Any) -> None:
        self._messages.append((event, user_id, subject))

    def task_assigned(self, user_id: str, task: Task) -> None:
        self.add("task_assigned", user_id, task)

    def task_overdue(self, user_id: str, task: Task) -> None:
        self.add("task_overdue", user_id, task)

    def task_completed(self, user_id: str, task: Task) -> None:
        self.add("task_completed", user_id, task)

    def workflow_completed(self, user_id: str, instance: Instance) -> None:
        self.add("workflow_completed", user_id, instance)

    def workflow_cancelled(self, user_id: str, instance: Instance) -> None:
        self.add("workflow_cancelled", user_id, instance)

    def __iter__(self) -> Iterator[Tuple[str, str, Any]]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


class NotificationDispatcher:
    """
    Fire-and-forget delivery of an Outbox.

    Messages are delivered on worker threads and the caller never waits.
    Pass an executor to share a pool; otherwise the dispatcher starts its
    own on first use and shuts it down in close(). inline=True delivers in
    the caller's thread instead, for tests that assert on a notifier right
    after an operation. Either way a failing notifier never affects the
    caller.
    """

    def __init__(self, notifier: Optional[Notifier] = None, executor: Optional[Executor] = None,
                 inline: bool = False, max_workers: int = 4):
        self.notifier = notifier or LogNotifier()
        self.executor = executor
        self.inline = inline
        self.max_workers = max_workers
        self._own_executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> Executor:
        if self.executor is not None:
            return self.executor
        with self._lock:
            if self._own_executor is None:
                self._own_executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                        thread_name_prefix="notify")
            return self._own_executor

    def flush(self, outbox: Outbox) -> None:
        for event, user_id, subject in outbox:
            if self.inline:
                self._deliver(event, user_id, subject)
                continue
            try:
                self._get_executor().submit(self._deliver, event, user_id, subject)
            except RuntimeError as e:
                # Executor already shut down
                logger.warning("Could not queue %s notification for %s: %s", event, user_id, e)

    def close(self, wait: bool = True) -> None:
        """Shut down the dispatcher's own pool; a shared executor is left alone"""
        with self._lock:
            executor, self._own_executor = self._own_executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _deliver(self, event: str, user_id: str, subject: Any) -> None:
        try:
            getattr(self.notifier, f"notify_{event}")(user_id, subject)
        except Exception as e:
            logger.warning("Notification %s to %s failed: %s", event, user_id, e,
                           extra={'action': event, 'extra': {'recipient': user_id}})
