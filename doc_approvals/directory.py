"""
Authorization and User Directory

The engine does not own identities. It asks an Authorizer who may act on a
task, who may cancel an instance and who currently holds a role. The
in-memory directory is the default implementation, good for tests and for
deployments whose user base is loaded at start-up.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .models import Instance, Task


class Authorizer(ABC):
    """Authorization collaborator of the engine and scheduler"""

    @abstractmethod
    def can_act_on_task(self, actor: str, task: Task) -> bool:
        """Whether actor may approve or reject the task"""
        pass

    @abstractmethod
    def can_cancel_instance(self, actor: str, instance: Instance) -> bool:
        """Whether actor may cancel the instance"""
        pass

    @abstractmethod
    def current_role_holders(self, role_name: str) -> List[str]:
        """Active users holding a role, in a stable order"""
        pass


@dataclass
class DirectoryUser:
    """User known to the directory"""
    user_id: str
    full_name: str = ""
    email: str = ""
    roles: Set[str] = field(default_factory=set)
    is_active: bool = True

    def has_role(self, role_name: str) -> bool:
        return role_name in self.roles


class InMemoryDirectory(Authorizer):
    """
    Users and roles held in memory.

    Only active users act on tasks or count as role holders. An instance can
    be cancelled by its initiator or by any holder of an administrator role.
    """

    def __init__(self, admin_roles: Iterable[str] = ("ADMIN",)):
        self._users: Dict[str, DirectoryUser] = {}
        self._lock = threading.RLock()
        self.admin_roles = set(admin_roles)

    # User management

    def add_user(self, user_id: str, roles: Iterable[str] = (), full_name: str = "",
                 email: str = "", is_active: bool = True) -> DirectoryUser:
        """Add or replace a user"""
        user = DirectoryUser(user_id=user_id, full_name=full_name, email=email,
                             roles=set(roles), is_active=is_active)
        with self._lock:
            self._users[user_id] = user
        return user

    def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        with self._lock:
            return self._users.get(user_id)

    def assign_role(self, user_id: str, role_name: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if not user:
                return False
            user.roles.add(role_name)
            return True

    def remove_role(self, user_id: str, role_name: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if not user or role_name not in user.roles:
                return False
            user.roles.discard(role_name)
            return True

    def deactivate_user(self, user_id: str) -> bool:
        return self._set_active(user_id, False)

    def activate_user(self, user_id: str) -> bool:
        return self._set_active(user_id, True)

    def _set_active(self, user_id: str, active: bool) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if not user:
                return False
            user.is_active = active
            return True

    # Authorizer

    def is_active(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        return bool(user and user.is_active)

    def can_act_on_task(self, actor: str, task: Task) -> bool:
        return actor == task.assigned_to and self.is_active(actor)

    def can_cancel_instance(self, actor: str, instance: Instance) -> bool:
        if actor == instance.initiator:
            return True
        user = self.get_user(actor)
        return bool(user and user.is_active and user.roles & self.admin_roles)

    def current_role_holders(self, role_name: str) -> List[str]:
        # Insertion order keeps escalation target selection deterministic
        with self._lock:
            return [
                user.user_id for user in self._users.values()
                if user.is_active and user.has_role(role_name)
            ]
