"""
Workflow Instance State Machine

Drives a document through the steps of its template:
IN_PROGRESS -> APPROVED | REJECTED | CANCELLED. Every operation runs inside
one storage transaction, so a failure part-way (for example a step with no
approvers while advancing) leaves the instance exactly as it was.
Notifications are sent only after the transaction commits.
"""

import logging
import uuid
from concurrent.futures import Executor
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from .clock import Clock, utc_now
from .config import EngineConfig
from .directory import Authorizer
from .errors import (
    AuthorizationError, ConcurrencyConflictError, ConfigurationError,
    InvalidStateError, NotFoundError,
)
from .history import HistoryAction, HistoryEntry, HistoryLog
from .models import (
    ApprovalPolicy, Instance, InstanceStatus, Step, Task, TaskAction, TaskStatus,
    Template, Verdict, WorkflowPriority,
)
from .notifications import NotificationDispatcher, Notifier, Outbox
from .policy import evaluate
from .storage import StorageInterface
from .tasks import TaskStore
from .templates import TemplateStore

logger = logging.getLogger(__name__)

_PAST_TENSE = {TaskAction.APPROVE: "approved", TaskAction.REJECT: "rejected"}


class InstanceStore:
    """Versioned storage of workflow instances"""

    TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def add(self, instance: Instance) -> Instance:
        version = self.storage.compare_and_save(self.TABLE, instance.id, instance.to_dict(), None)
        if version is None:
            raise ConcurrencyConflictError("instance", instance.id)
        instance.version = version
        return instance

    def update(self, instance: Instance) -> Instance:
        version = self.storage.compare_and_save(
            self.TABLE, instance.id, instance.to_dict(), instance.version
        )
        if version is None:
            raise ConcurrencyConflictError("instance", instance.id)
        instance.version = version
        return instance

    def get(self, instance_id: str) -> Instance:
        data = self.storage.load(self.TABLE, instance_id)
        if not data:
            raise NotFoundError(f"Instance {instance_id} not found")
        return Instance.from_dict(data)

    def find(self, filters: Dict) -> List[Instance]:
        instances = [Instance.from_dict(row) for row in self.storage.find(self.TABLE, filters)]
        instances.sort(key=lambda i: (i.start_date, i.id))
        return instances


class WorkflowEngine:
    """
    Approval workflow engine.

    Owns instance creation, task actions and cancellation. The SLA scheduler
    shares the same storage and task store and is the only other writer.
    """

    def __init__(
        self,
        storage: StorageInterface,
        authorizer: Authorizer,
        templates: Optional[TemplateStore] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[EngineConfig] = None,
        clock: Clock = utc_now,
        executor: Optional[Executor] = None,
        inline_notifications: bool = False,
    ):
        self.storage = storage
        self.authorizer = authorizer
        self.clock = clock
        self.config = config or EngineConfig()
        self.templates = templates or TemplateStore(storage, clock)
        self.tasks = TaskStore(storage)
        self.instances = InstanceStore(storage)
        self.history = HistoryLog(storage)
        self.dispatcher = NotificationDispatcher(notifier, executor, inline=inline_notifications,
                                                 max_workers=self.config.notification_workers)

    def close(self) -> None:
        """Deliver queued notifications and stop the delivery pool"""
        self.dispatcher.close()

    # Operations

    def create_instance(
        self,
        template_id: str,
        document_ref: str,
        initiator: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: WorkflowPriority = WorkflowPriority.NORMAL,
        comments: Optional[str] = None,
    ) -> Instance:
        """
        Start a workflow for a document.

        Generates the first step's tasks and writes WORKFLOW_STARTED.

        Raises:
            NotFoundError: Unknown template
            InvalidStateError: Template is deactivated
            ConfigurationError: Template has no steps, or the first step
                resolves to no approvers
        """
        template = self.templates.get_template(template_id)
        if not template.is_active:
            raise InvalidStateError(f"Template {template_id} is not active")
        if not template.steps:
            raise ConfigurationError(f"Template {template_id} has no steps")

        now = self.clock()
        first_step = template.first_step
        due_date = None
        if template.default_sla_hours:
            due_date = now + timedelta(hours=template.default_sla_hours)

        instance = Instance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            template_id=template.id,
            document_ref=document_ref,
            initiator=initiator,
            start_date=now,
            status=InstanceStatus.IN_PROGRESS,
            current_step_order=first_step.step_order,
            due_date=due_date,
            priority=priority,
            title=title or f"Document Approval: {document_ref}",
            description=description,
            comments=comments,
        )

        outbox = Outbox()
        with self.storage.atomic():
            self.instances.add(instance)
            self.history.record(
                instance.id, HistoryAction.WORKFLOW_STARTED,
                f"Workflow '{template.name}' started for document {document_ref}",
                initiator, now,
                metadata={'template_id': template.id, 'document_ref': document_ref},
            )
            self._enter_step(instance, first_step, initiator, now, outbox)

        logger.info("Started workflow %s for document %s", instance.id, document_ref,
                    extra={'instance_id': instance.id, 'actor': initiator, 'action': 'create_instance'})
        self.dispatcher.flush(outbox)
        return self.get_instance(instance.id)

    def submit_task_action(
        self,
        task_id: str,
        actor: str,
        action: Union[TaskAction, str],
        comments: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Instance:
        """
        Approve or reject a task and apply the resulting step verdict.

        Args:
            task_id: Task being acted on
            actor: Acting user; must be the assignee
            action: APPROVE or REJECT
            comments: Optional approver comments
            expected_version: Task version the caller last saw; a mismatch
                raises ConcurrencyConflictError

        Returns:
            The instance after the action, with tasks and history
        """
        action = TaskAction(action)
        if action is TaskAction.NONE:
            raise ValueError("Action must be APPROVE or REJECT")

        now = self.clock()
        outbox = Outbox()
        with self.storage.atomic():
            task = self.tasks.get(task_id)
            if expected_version is not None and task.version != expected_version:
                raise ConcurrencyConflictError("task", task.id)
            if actor != task.assigned_to or not self.authorizer.can_act_on_task(actor, task):
                raise AuthorizationError(f"User {actor} may not act on task {task_id}")

            instance = self.instances.get(task.instance_id)
            if instance.is_terminal:
                raise InvalidStateError(f"Instance {instance.id} is already {instance.status.value}")
            if task.status is not TaskStatus.PENDING:
                raise InvalidStateError(f"Task {task_id} is {task.status.value}, not PENDING")
            if task.step_order != instance.current_step_order:
                raise InvalidStateError(f"Task {task_id} does not belong to the current step")

            template = self.templates.get_template(instance.template_id)
            step = template.get_step(task.step_order)
            if step is None:
                raise NotFoundError(f"Template {template.id} has no step {task.step_order}")

            task.status = TaskStatus.COMPLETED
            task.action = action
            task.completed_date = now
            task.completed_by = actor
            task.comments = comments
            task.updated_at = now
            self.tasks.update(task)

            self.history.record(
                instance.id, HistoryAction.TASK_COMPLETED,
                f"Task '{task.title}' {_PAST_TENSE[action]} by {actor}",
                actor, now,
                metadata={'task_id': task.id, 'action': action, 'comments': comments},
            )
            outbox.task_completed(instance.initiator, task)

            self._apply_verdict(instance, template, step, actor, now, outbox)

        logger.info("Task %s %s by %s", task_id, action.value, actor,
                    extra={'instance_id': instance.id, 'task_id': task_id, 'actor': actor,
                           'action': 'submit_task_action'})
        self.dispatcher.flush(outbox)
        return self.get_instance(instance.id)

    def cancel_instance(self, instance_id: str, actor: str, reason: Optional[str] = None) -> Instance:
        """
        Cancel a running instance and all of its open tasks.

        Raises:
            AuthorizationError: Actor may not cancel this instance
            InvalidStateError: Instance already terminal
        """
        now = self.clock()
        outbox = Outbox()
        with self.storage.atomic():
            instance = self.instances.get(instance_id)
            if not self.authorizer.can_cancel_instance(actor, instance):
                raise AuthorizationError(f"User {actor} may not cancel instance {instance_id}")
            if instance.is_terminal:
                raise InvalidStateError(f"Instance {instance_id} is already {instance.status.value}")

            open_tasks = [t for t in self.tasks.list_for_instance(instance_id) if t.status.is_open]
            self._cancel_tasks(instance, open_tasks, "Workflow cancelled", actor, now)

            instance.status = InstanceStatus.CANCELLED
            instance.end_date = now
            instance.updated_at = now
            self.instances.update(instance)

            details = f"Workflow cancelled by {actor}"
            if reason:
                details += f": {reason}"
            self.history.record(instance.id, HistoryAction.WORKFLOW_CANCELLED, details, actor, now,
                                metadata={'reason': reason})
            outbox.workflow_cancelled(instance.initiator, instance)

        logger.info("Cancelled workflow %s", instance_id,
                    extra={'instance_id': instance_id, 'actor': actor, 'action': 'cancel_instance'})
        self.dispatcher.flush(outbox)
        return self.get_instance(instance_id)

    # Queries

    def get_instance(self, instance_id: str) -> Instance:
        """Instance with its tasks and chronological history"""
        instance = self.instances.get(instance_id)
        instance.tasks = self.tasks.list_for_instance(instance_id)
        instance.history = self.history.list_for_instance(instance_id)
        return instance

    def get_task(self, task_id: str) -> Task:
        return self.tasks.get(task_id)

    def list_tasks_for_assignee(self, user_id: str,
                                status: Optional[TaskStatus] = None) -> List[Task]:
        return self.tasks.list_for_assignee(user_id, status)

    def list_instances(self, status: Optional[InstanceStatus] = None,
                       initiator: Optional[str] = None,
                       document_ref: Optional[str] = None) -> List[Instance]:
        """Instances matching all given filters, oldest first"""
        filters = {}
        if status is not None:
            filters['status'] = status
        if initiator is not None:
            filters['initiator'] = initiator
        if document_ref is not None:
            filters['document_ref'] = document_ref
        return self.instances.find(filters)

    def get_history(self, instance_id: str) -> List[HistoryEntry]:
        return self.history.list_for_instance(instance_id)

    def resolve_approvers(self, step: Step) -> List[str]:
        """
        Effective approvers of a step: explicit approvers followed by the
        current holders of its roles, without duplicates.
        """
        approvers: List[str] = []
        for user_id in step.approver_ids:
            if user_id not in approvers:
                approvers.append(user_id)
        for role_name in step.role_names:
            for user_id in self.authorizer.current_role_holders(role_name):
                if user_id not in approvers:
                    approvers.append(user_id)
        return approvers

    # Internals

    def _task_due_date(self, step: Step, instance: Instance, now: datetime) -> datetime:
        if step.sla_hours:
            return now + timedelta(hours=step.sla_hours)
        if instance.due_date is not None:
            return instance.due_date
        return now + timedelta(hours=self.config.default_task_sla_hours)

    def _enter_step(self, instance: Instance, step: Step, performer: Optional[str],
                    now: datetime, outbox: Outbox) -> List[Task]:
        """Generate one task per effective approver of the step"""
        approvers = self.resolve_approvers(step)
        if not approvers:
            raise ConfigurationError(f"Step '{step.name}' has no eligible approvers")
        if step.approval_policy is ApprovalPolicy.QUORUM and step.required_approvals > len(approvers):
            raise ConfigurationError(
                f"Step '{step.name}' requires {step.required_approvals} approvals "
                f"but only {len(approvers)} approvers are eligible"
            )

        due_date = self._task_due_date(step, instance, now)
        tasks = []
        for user_id in approvers:
            task = Task(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                instance_id=instance.id,
                step_id=step.id,
                step_order=step.step_order,
                assigned_to=user_id,
                due_date=due_date,
                title=step.name,
            )
            self.tasks.add(task)
            self.history.record(
                instance.id, HistoryAction.TASK_ASSIGNED,
                f"Task '{step.name}' assigned to {user_id}",
                performer, now,
                metadata={'task_id': task.id, 'assigned_to': user_id, 'step_order': step.step_order},
            )
            outbox.task_assigned(user_id, task)
            tasks.append(task)
        return tasks

    def _cancel_tasks(self, instance: Instance, tasks: List[Task], reason: str,
                      performer: Optional[str], now: datetime) -> None:
        for task in tasks:
            task.status = TaskStatus.CANCELLED
            task.comments = reason
            task.updated_at = now
            self.tasks.update(task)
            self.history.record(
                instance.id, HistoryAction.TASK_CANCELLED,
                f"Task '{task.title}' for {task.assigned_to} cancelled: {reason}",
                performer, now,
                metadata={'task_id': task.id, 'assigned_to': task.assigned_to},
            )

    def _apply_verdict(self, instance: Instance, template: Template, step: Step,
                       actor: str, now: datetime, outbox: Outbox) -> Verdict:
        step_tasks = self.tasks.list_for_step(instance.id, step.id)
        outcomes = [t.action if t.status is TaskStatus.COMPLETED else None for t in step_tasks]
        verdict = evaluate(step.approval_policy, step.required_approvals, outcomes)
        if verdict is Verdict.PENDING:
            return verdict

        open_tasks = [t for t in step_tasks if t.status.is_open]
        if verdict is Verdict.APPROVED:
            self._cancel_tasks(instance, open_tasks, f"Step '{step.name}' approved", actor, now)
            self.history.record(instance.id, HistoryAction.STEP_APPROVED,
                                f"Step '{step.name}' approved", actor, now,
                                metadata={'step_order': step.step_order})

            if template.is_last_step(step.step_order):
                self._finish(instance, InstanceStatus.APPROVED, actor, now, outbox)
                return verdict

            next_step = template.get_step(step.step_order + 1)
            instance.current_step_order = next_step.step_order
            instance.updated_at = now
            self.instances.update(instance)
            self.history.record(instance.id, HistoryAction.STEP_ADVANCED,
                                f"Advanced to step {next_step.step_order} '{next_step.name}'",
                                actor, now,
                                metadata={'from_step': step.step_order, 'to_step': next_step.step_order})
            self._enter_step(instance, next_step, actor, now, outbox)
            return verdict

        self._cancel_tasks(instance, open_tasks, f"Step '{step.name}' rejected", actor, now)
        self.history.record(instance.id, HistoryAction.STEP_REJECTED,
                            f"Step '{step.name}' rejected", actor, now,
                            metadata={'step_order': step.step_order})
        self._finish(instance, InstanceStatus.REJECTED, actor, now, outbox)
        return verdict

    def _finish(self, instance: Instance, status: InstanceStatus, actor: str,
                now: datetime, outbox: Outbox) -> None:
        instance.status = status
        instance.end_date = now
        instance.updated_at = now
        self.instances.update(instance)
        self.history.record(instance.id, HistoryAction.WORKFLOW_COMPLETED,
                            f"Workflow completed: {status.value}", actor, now,
                            metadata={'status': status})
        outbox.workflow_completed(instance.initiator, instance)
        logger.info("Workflow %s completed: %s", instance.id, status.value,
                    extra={'instance_id': instance.id, 'action': 'workflow_completed'})
