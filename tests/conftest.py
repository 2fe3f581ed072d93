"""
Shared fixtures for approval engine tests
"""

from unittest.mock import Mock

import pytest

from doc_approvals.clock import ManualClock
from doc_approvals.config import EngineConfig
from doc_approvals.directory import InMemoryDirectory
from doc_approvals.engine import WorkflowEngine
from doc_approvals.models import ApprovalPolicy, Step, StepType, Template
from doc_approvals.notifications import Notifier
from doc_approvals.scheduler import SlaScheduler
from doc_approvals.storage import InMemoryStorage
from doc_approvals.templates import TemplateStore


def make_step(order, approvers=(), roles=(), policy=ApprovalPolicy.QUORUM,
              required=1, sla_hours=24, name=None, step_type=StepType.APPROVAL):
    """Unregistered step; ids are filled in by TemplateStore.register"""
    return Step(
        id="",
        template_id="",
        step_order=order,
        name=name or f"Step {order}",
        step_type=step_type,
        approval_policy=policy,
        required_approvals=required,
        sla_hours=sla_hours,
        approver_ids=tuple(approvers),
        role_names=tuple(roles),
    )


def make_template(*steps, name="Contract Approval", **kwargs):
    return Template(id="", created_at=None, updated_at=None, name=name, steps=steps, **kwargs)


@pytest.fixture
def clock():
    """Manual clock starting 2024-01-01 09:00 UTC"""
    return ManualClock()


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def config():
    """Defaults only, ignoring any .env file"""
    return EngineConfig(_env_file=None)


@pytest.fixture
def directory():
    """Approvers alice/bob/carol, managers mary/mike, admin ada"""
    directory = InMemoryDirectory()
    directory.add_user("alice", roles={"REVIEWER"})
    directory.add_user("bob", roles={"REVIEWER"})
    directory.add_user("carol")
    directory.add_user("ivan")
    directory.add_user("mary", roles={"MANAGER"})
    directory.add_user("mike", roles={"MANAGER"})
    directory.add_user("ada", roles={"ADMIN"})
    return directory


@pytest.fixture
def notifier():
    """Spy notifier"""
    return Mock(spec=Notifier)


@pytest.fixture
def templates(storage, clock):
    return TemplateStore(storage, clock)


@pytest.fixture
def engine(storage, directory, templates, notifier, config, clock):
    """Engine delivering notifications inline so the spy can be asserted on"""
    return WorkflowEngine(storage, directory, templates=templates, notifier=notifier,
                          config=config, clock=clock, inline_notifications=True)


@pytest.fixture
def scheduler(storage, directory, notifier, config, clock, engine):
    return SlaScheduler(storage, directory, notifier=notifier, config=config, clock=clock,
                        tasks=engine.tasks, history=engine.history,
                        inline_notifications=True)


@pytest.fixture
def register(templates):
    """Register a template built from steps"""
    def _register(*steps, **kwargs):
        return templates.register(make_template(*steps, **kwargs))
    return _register
