"""
Service container and FastAPI dependencies

Routes that change definitions, identities or start work are guarded by
``require_permission``; step decisions are authorized by the engine itself
against the step's eligible approvers.
"""

import json
from typing import Callable, Optional

from fastapi import Depends, Request

from ..audit import AuditTrail, InstanceAuditLog
from ..config import ApprovalsConfig, get_config
from ..engine import ApprovalEngine
from ..errors import NotAuthorizedError, ValidationError
from ..escalation import EscalationController
from ..events import EventDispatcher
from ..identity import IdentityStore
from ..logging_config import get_logger, log_action
from ..permissions import PermissionResolver
from ..step_resolver import StepResolver
from ..storage import StorageInterface, create_storage
from ..workflows import WorkflowStore


logger = get_logger("itsm_approvals.api")


class ApprovalSystem:
    """Approval engine with all components wired to one storage backend"""

    def __init__(self, settings: Optional[ApprovalsConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = settings or get_config()

        self.storage = storage or create_storage(
            backend=self.config.storage_backend,
            sqlite_path=self.config.sqlite_path,
            retry_attempts=self.config.storage_retry_attempts,
            retry_backoff_seconds=self.config.storage_retry_backoff_seconds
        )

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.identity = IdentityStore(self.storage, self.audit_trail)
        self.permissions = PermissionResolver(self.identity, self.config.group_derived_roles)
        self.workflows = WorkflowStore(self.storage, self.audit_trail)
        self.resolver = StepResolver(self.workflows, self.permissions)
        self.audit_log = InstanceAuditLog(self.storage, self.audit_trail)
        self.events = EventDispatcher()
        self.engine = ApprovalEngine(self.storage, self.workflows, self.resolver,
                                     self.audit_log, self.events)
        self.escalation = EscalationController(self.engine, self.config.default_escalation_timeout_hours)

        if self.config.bootstrap_admin_id:
            self.identity.ensure_admin(self.config.bootstrap_admin_id)

    def close(self) -> None:
        self.storage.close()


_approval_system: Optional[ApprovalSystem] = None


def get_approval_system() -> ApprovalSystem:
    """Dependency returning the process-wide system, built from config on first use"""
    global _approval_system
    if _approval_system is None:
        _approval_system = ApprovalSystem()
    return _approval_system


async def get_actor_id(request: Request) -> str:
    """
    The acting user, from the ``actor_id`` query parameter or JSON body field.

    FastAPI has already read and decoded the body by the time dependencies
    run, so this sees the same payload the route's request model does.
    """
    actor_id = request.query_params.get("actor_id")
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if isinstance(payload, dict) and "actor_id" in payload:
        if actor_id is not None and payload["actor_id"] != actor_id:
            raise ValidationError("actor_id differs between query and body",
                                  details={'field': 'actor_id'})
        actor_id = payload["actor_id"]

    if not isinstance(actor_id, str) or not actor_id:
        raise ValidationError("actor_id is required", details={'field': 'actor_id'})
    return actor_id


def require_permission(permission: str) -> Callable[..., str]:
    """Dependency factory: the acting user must hold ``permission``"""

    def check(request: Request,
              actor_id: str = Depends(get_actor_id),
              system: ApprovalSystem = Depends(get_approval_system)) -> str:
        if not system.permissions.has_permission(actor_id, permission):
            log_action(logger, "warning", f"User {actor_id} lacks {permission}",
                       actor_id=actor_id, action="authorize", resource=request.url.path)
            raise NotAuthorizedError(
                f"User {actor_id} lacks permission {permission}",
                details={'actor_id': actor_id, 'permission': permission}
            )
        return actor_id

    return check
