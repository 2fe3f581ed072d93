"""
Workflow Error Taxonomy

Exceptions raised by the approval engine. Callers distinguish them to
decide whether an operation can be retried: only ConcurrencyConflictError
is worth retrying after a refresh.
"""


class WorkflowError(Exception):
    """Base class for all approval engine errors"""


class NotFoundError(WorkflowError):
    """Referenced template, step, instance or task does not exist"""


class ConfigurationError(WorkflowError):
    """Template or step is malformed and cannot drive an instance"""


class InvalidStateError(WorkflowError):
    """Operation is not allowed in the entity's current state"""


class AuthorizationError(WorkflowError):
    """Actor is not allowed to perform the operation"""


class ConcurrencyConflictError(WorkflowError):
    """Entity changed between read and write; refresh and retry"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} was modified concurrently")
        self.entity_type = entity_type
        self.entity_id = entity_id
