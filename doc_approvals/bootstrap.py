"""
Bootstrap

Explicit start-up wiring: builds storage, stores, engine and scheduler from
an EngineConfig and seeds the default approval template. Nothing here runs
on import.
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from .clock import Clock, utc_now
from .config import EngineConfig
from .directory import Authorizer
from .engine import WorkflowEngine
from .models import ApprovalPolicy, Step, StepType, Template, WorkflowType
from .notifications import Notifier
from .scheduler import SlaScheduler
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .templates import TemplateStore

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "Default Approval Workflow"


def seed_default_template(store: TemplateStore, created_by: str = "system") -> Template:
    """
    Register the default two-step approval template unless a template with
    the same name already exists. Returns the stored template.
    """
    existing = store.find_by_name(DEFAULT_TEMPLATE_NAME)
    if existing:
        return existing[0]

    template = Template(
        id="",
        created_at=None,
        updated_at=None,
        name=DEFAULT_TEMPLATE_NAME,
        description="Basic document approval workflow",
        workflow_type=WorkflowType.DOCUMENT_APPROVAL,
        default_sla_hours=48,
        created_by=created_by,
        steps=(
            Step(id="", template_id="", step_order=1, name="Initial Review",
                 step_type=StepType.REVIEW, approval_policy=ApprovalPolicy.QUORUM,
                 required_approvals=1, sla_hours=24, role_names=("MANAGER",),
                 description="First level document review"),
            Step(id="", template_id="", step_order=2, name="Final Approval",
                 step_type=StepType.APPROVAL, approval_policy=ApprovalPolicy.ALL,
                 required_approvals=1, sla_hours=24, role_names=("ADMIN",),
                 description="Final document approval by admin"),
        ),
    )
    stored = store.register(template)
    logger.info("Seeded default approval template %s", stored.id)
    return stored


def create_storage(config: EngineConfig) -> StorageInterface:
    """Storage backend for the configured database URL"""
    if config.database_url in ("memory://", "memory"):
        return InMemoryStorage()
    return SQLiteStorage.from_url(config.database_url)


@dataclass
class ApprovalSystem:
    """Wired components of a running approval engine"""
    storage: StorageInterface
    templates: TemplateStore
    engine: WorkflowEngine
    scheduler: SlaScheduler
    # Notification pool created by build_system; a caller-supplied one is not ours to stop
    executor: Optional[ThreadPoolExecutor] = None

    def close(self) -> None:
        """Stop the scheduler, deliver queued notifications, then close storage"""
        self.scheduler.close()
        self.engine.close()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        self.storage.close()


def build_system(
    config: EngineConfig,
    authorizer: Authorizer,
    notifier: Optional[Notifier] = None,
    storage: Optional[StorageInterface] = None,
    clock: Clock = utc_now,
    executor: Optional[Executor] = None,
    seed_defaults: bool = True,
) -> ApprovalSystem:
    """
    Build the engine and scheduler over one shared storage.

    Engine and scheduler share one notification pool, so no operation waits
    on a notifier. The scheduler is returned stopped; call
    system.scheduler.start() to run it in the background.
    """
    storage = storage or create_storage(config)
    own_executor = None
    if executor is None:
        own_executor = executor = ThreadPoolExecutor(max_workers=config.notification_workers,
                                                     thread_name_prefix="notify")
    templates = TemplateStore(storage, clock)
    engine = WorkflowEngine(storage, authorizer, templates=templates, notifier=notifier,
                            config=config, clock=clock, executor=executor)
    scheduler = SlaScheduler(storage, authorizer, notifier=notifier, config=config, clock=clock,
                             tasks=engine.tasks, history=engine.history, executor=executor)
    if seed_defaults:
        seed_default_template(templates)
    return ApprovalSystem(storage=storage, templates=templates, engine=engine, scheduler=scheduler,
                          executor=own_executor)
