"""Multi-tenant access rules for templates and executions."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel

from .errors import AuthorizationError
from .persistence.models import Execution, ScopedVisibility, SharedVisibility, WorkflowTemplate

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class Permission(str, Enum):
    WORKFLOWS_EXECUTE = "workflows.execute"
    WORKFLOWS_VIEW = "workflows.view"
    WORKFLOWS_MANAGE = "workflows.manage"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.SUPER_ADMIN: frozenset(Permission),
    Role.ADMIN: frozenset(Permission),
    Role.MEMBER: frozenset({Permission.WORKFLOWS_EXECUTE, Permission.WORKFLOWS_VIEW}),
    Role.VIEWER: frozenset({Permission.WORKFLOWS_VIEW}),
}


class Caller(BaseModel):
    """Identity supplied by the session provider for one request."""

    id: str
    organization_id: Optional[str] = None
    role: Role = Role.MEMBER

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS.get(self.role, frozenset())


def require_permission(caller: Caller, permission: Permission) -> None:
    if not caller.has_permission(permission):
        raise AuthorizationError(f"Missing permission: {permission.value}")


def can_read_execution(caller: Caller, execution: Execution) -> bool:
    """Owner, same organization, or super admin."""
    if caller.is_super_admin:
        return True
    if execution.user_id == caller.id:
        return True
    return (
        execution.organization_id is not None
        and execution.organization_id == caller.organization_id
    )


def authorize_execution(caller: Caller, execution: Execution) -> None:
    if not can_read_execution(caller, execution):
        logger.warning(f"Caller {caller.id} denied access to execution {execution.id}")
        raise AuthorizationError("Access denied")


def can_use_template(caller: Caller, template: WorkflowTemplate) -> bool:
    if caller.is_super_admin:
        return True
    visibility = template.visibility
    if isinstance(visibility, SharedVisibility):
        return True
    if isinstance(visibility, ScopedVisibility):
        return (
            caller.organization_id is not None
            and visibility.organization_id == caller.organization_id
        )
    raise TypeError(f"Unknown template visibility: {visibility!r}")


def authorize_template(caller: Caller, template: WorkflowTemplate) -> None:
    if not can_use_template(caller, template):
        raise AuthorizationError("Access denied to workflow template")


def scope_execution_filters(
    caller: Caller,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Return the ``(organization_id, user_id)`` filters a listing must apply.

    Super admins get their filters back unchanged. Everyone else sees their
    organization's executions, or only their own when they have none, and may
    not ask for another organization.
    """
    if caller.is_super_admin:
        return organization_id, user_id
    if organization_id is not None and organization_id != caller.organization_id:
        raise AuthorizationError("Cannot list executions of another organization")
    if caller.organization_id is None:
        return None, caller.id
    return caller.organization_id, user_id
