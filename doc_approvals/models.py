"""
Workflow Data Model

Templates, steps, instances and tasks of the approval engine. Templates and
steps are loaded as fully-materialized aggregates and never fetch anything
on demand; instances and tasks carry a version used for optimistic
concurrency control.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, TYPE_CHECKING
from enum import Enum

from .storage import StorageRecord, encode_value, parse_datetime

if TYPE_CHECKING:
    from .history import HistoryEntry


class WorkflowType(Enum):
    """Kinds of document workflows"""
    DOCUMENT_APPROVAL = "DOCUMENT_APPROVAL"
    DOCUMENT_REVIEW = "DOCUMENT_REVIEW"
    CHANGE_REQUEST = "CHANGE_REQUEST"
    CUSTOM = "CUSTOM"


class StepType(Enum):
    """Types of workflow steps"""
    REVIEW = "REVIEW"
    APPROVAL = "APPROVAL"


class ApprovalPolicy(Enum):
    """How task outcomes of one step combine into a verdict"""
    UNANIMOUS = "UNANIMOUS"
    ALL = "ALL"
    MAJORITY = "MAJORITY"
    ANY_ONE = "ANY_ONE"
    QUORUM = "QUORUM"


class Verdict(Enum):
    """Outcome of a step as seen by the policy evaluator"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class InstanceStatus(Enum):
    """Status of a workflow instance"""
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.IN_PROGRESS


class TaskStatus(Enum):
    """Status of an approver task"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"

    @property
    def is_open(self) -> bool:
        """Not yet resolved by an approver or by cancellation"""
        return self in (TaskStatus.PENDING, TaskStatus.OVERDUE)


class TaskAction(Enum):
    """Decision recorded on a task"""
    NONE = "NONE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class WorkflowPriority(Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


def _decode(data: Dict[str, Any], enums: Dict[str, type], timestamps: Tuple[str, ...]) -> Dict[str, Any]:
    data = dict(data)
    for name, enum_type in enums.items():
        if data.get(name) is not None:
            data[name] = enum_type(data[name])
    for name in timestamps:
        if name in data:
            data[name] = parse_datetime(data[name])
    return data


@dataclass(frozen=True)
class Step:
    """One stage of a template's approval sequence"""
    id: str
    template_id: str
    step_order: int
    name: str
    step_type: StepType = StepType.APPROVAL
    approval_policy: ApprovalPolicy = ApprovalPolicy.QUORUM
    required_approvals: int = 1
    sla_hours: Optional[int] = None
    approver_ids: Tuple[str, ...] = ()
    role_names: Tuple[str, ...] = ()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'template_id': self.template_id,
            'step_order': self.step_order,
            'name': self.name,
            'step_type': self.step_type.value,
            'approval_policy': self.approval_policy.value,
            'required_approvals': self.required_approvals,
            'sla_hours': self.sla_hours,
            'approver_ids': list(self.approver_ids),
            'role_names': list(self.role_names),
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        data = _decode(data, {'step_type': StepType, 'approval_policy': ApprovalPolicy}, ())
        data['approver_ids'] = tuple(data.get('approver_ids', ()))
        data['role_names'] = tuple(data.get('role_names', ()))
        return cls(**data)


@dataclass
class Template(StorageRecord):
    """Workflow definition: ordered steps plus metadata"""
    name: str
    steps: Tuple[Step, ...] = ()
    is_active: bool = True
    description: str = ""
    workflow_type: WorkflowType = WorkflowType.DOCUMENT_APPROVAL
    default_sla_hours: Optional[int] = None
    created_by: str = ""
    version: int = 1

    def __post_init__(self):
        self.steps = tuple(sorted(self.steps, key=lambda s: s.step_order))

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def first_step(self) -> Step:
        return self.steps[0]

    def get_step(self, step_order: int) -> Optional[Step]:
        """Step at the given order, if any"""
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None

    def is_last_step(self, step_order: int) -> bool:
        return bool(self.steps) and step_order >= self.steps[-1].step_order

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['steps'] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Template':
        data = _decode(data, {'workflow_type': WorkflowType}, ('created_at', 'updated_at'))
        data['steps'] = tuple(Step.from_dict(step) for step in data.get('steps', []))
        return cls(**data)


@dataclass
class Task(StorageRecord):
    """One approver's unit of work for a step within an instance"""
    instance_id: str
    step_id: str
    step_order: int
    assigned_to: str
    due_date: datetime
    status: TaskStatus = TaskStatus.PENDING
    action: TaskAction = TaskAction.NONE
    title: str = ""
    completed_date: Optional[datetime] = None
    completed_by: Optional[str] = None
    comments: Optional[str] = None
    escalation_count: int = 0
    version: int = 0

    @property
    def created_date(self) -> datetime:
        return self.created_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        data = _decode(
            data,
            {'status': TaskStatus, 'action': TaskAction},
            ('created_at', 'updated_at', 'due_date', 'completed_date'),
        )
        return cls(**data)


@dataclass
class Instance(StorageRecord):
    """One running execution of a template against a document"""
    template_id: str
    document_ref: str
    initiator: str
    start_date: datetime
    status: InstanceStatus = InstanceStatus.IN_PROGRESS
    current_step_order: int = 1
    due_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    priority: WorkflowPriority = WorkflowPriority.NORMAL
    title: str = ""
    description: Optional[str] = None
    comments: Optional[str] = None
    version: int = 0
    # Materialized on read, never persisted with the instance
    tasks: List[Task] = field(default_factory=list, compare=False)
    history: List['HistoryEntry'] = field(default_factory=list, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data = {
            key: encode_value(getattr(self, key))
            for key in self.__dataclass_fields__
            if key not in ('tasks', 'history')
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Instance':
        data = _decode(
            data,
            {'status': InstanceStatus, 'priority': WorkflowPriority},
            ('created_at', 'updated_at', 'start_date', 'due_date', 'end_date'),
        )
        data.pop('tasks', None)
        data.pop('history', None)
        return cls(**data)
