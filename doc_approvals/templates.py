"""
Workflow Template Store

Holds workflow definitions: ordered steps, each with its approval policy,
SLA and eligible approvers. Templates are read-mostly; once registered
their steps never change, only their active flag does.
"""

import dataclasses
import logging
import uuid
from typing import List, Optional

from .clock import Clock, utc_now
from .errors import ConfigurationError, NotFoundError
from .models import ApprovalPolicy, Step, Template
from .storage import StorageInterface

logger = logging.getLogger(__name__)


def validate_template(template: Template) -> None:
    """
    Check the structure of a template.

    A template without steps is accepted here; it only becomes an error
    when an instance is created from it.

    Raises:
        ConfigurationError: describing the first problem found
    """
    if template.default_sla_hours is not None and template.default_sla_hours <= 0:
        raise ConfigurationError("Template default SLA must be positive")

    step_orders = [step.step_order for step in template.steps]
    if len(set(step_orders)) != len(step_orders):
        raise ConfigurationError("Step orders must be unique")

    for expected, order in enumerate(sorted(step_orders), start=1):
        if order != expected:
            raise ConfigurationError("Step orders must be consecutive and start at 1")

    for step in template.steps:
        if step.sla_hours is not None and step.sla_hours <= 0:
            raise ConfigurationError(f"Step '{step.name}' SLA must be positive")
        if not step.approver_ids and not step.role_names:
            raise ConfigurationError(f"Step '{step.name}' has no approvers or roles")
        if step.approval_policy == ApprovalPolicy.QUORUM:
            if step.required_approvals < 1:
                raise ConfigurationError(f"Step '{step.name}' requires at least one approval")
            # Role holders are only known at step entry; explicit-only steps can be checked now
            explicit = set(step.approver_ids)
            if not step.role_names and step.required_approvals > len(explicit):
                raise ConfigurationError(
                    f"Step '{step.name}' requires {step.required_approvals} approvals "
                    f"but has only {len(explicit)} approvers"
                )


class TemplateStore:
    """Registry of workflow templates"""

    TABLE = "workflow_templates"

    def __init__(self, storage: StorageInterface, clock: Clock = utc_now):
        self.storage = storage
        self.clock = clock

    def register(self, template: Template) -> Template:
        """
        Validate and store a new template.

        Missing template and step ids are generated, and every step is bound
        to the template id.
        """
        validate_template(template)

        now = self.clock()
        template_id = template.id or str(uuid.uuid4())
        steps = tuple(
            dataclasses.replace(step, id=step.id or str(uuid.uuid4()), template_id=template_id)
            for step in template.steps
        )
        stored = dataclasses.replace(template, id=template_id, steps=steps,
                                     created_at=now, updated_at=now)

        if self.storage.compare_and_save(self.TABLE, template_id, stored.to_dict(), None) is None:
            raise ConfigurationError(f"Template {template_id} already exists")

        logger.info("Registered template '%s' with %d steps", stored.name, stored.step_count,
                    extra={'action': 'template_registered', 'extra': {'template_id': template_id}})
        return stored

    def find(self, template_id: str) -> Optional[Template]:
        data = self.storage.load(self.TABLE, template_id)
        return Template.from_dict(data) if data else None

    def get_template(self, template_id: str) -> Template:
        """Template with its steps in step order"""
        template = self.find(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def get_step(self, template_id: str, step_order: int) -> Step:
        step = self.get_template(template_id).get_step(step_order)
        if step is None:
            raise NotFoundError(f"Template {template_id} has no step {step_order}")
        return step

    def find_by_name(self, name: str) -> List[Template]:
        return [Template.from_dict(data) for data in self.storage.find(self.TABLE, {'name': name})]

    def list_templates(self, active_only: bool = False) -> List[Template]:
        """List templates sorted by name"""
        templates = [Template.from_dict(data) for data in self.storage.load_all(self.TABLE)]
        if active_only:
            templates = [t for t in templates if t.is_active]
        return sorted(templates, key=lambda t: t.name)

    def activate(self, template_id: str) -> Template:
        return self._set_active(template_id, True)

    def deactivate(self, template_id: str) -> Template:
        return self._set_active(template_id, False)

    def _set_active(self, template_id: str, active: bool) -> Template:
        template = self.get_template(template_id)
        template.is_active = active
        template.updated_at = self.clock()
        self.storage.save(self.TABLE, template_id, template.to_dict())
        logger.info("Template %s %s", template_id, "activated" if active else "deactivated")
        return template
