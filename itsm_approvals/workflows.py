"""
Workflow Definition Store

Named, versioned approval workflow definitions. Every edit produces a new
version and an immutable snapshot of it; running approval instances keep
pointing at the (workflow_id, version) they started with.
"""

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from .audit import AuditEventType, AuditTrail
from .errors import ConcurrencyConflictError, WorkflowNotFoundError, WorkflowValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("itsm_approvals.workflows")


@dataclass
class WorkflowStep:
    """One sequential step; approvers are explicit user ids and/or role names"""
    order: int
    name: str = ""
    approver_users: Set[str] = field(default_factory=set)
    approver_roles: Set[str] = field(default_factory=set)
    escalation_timeout_hours: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order': self.order,
            'name': self.name,
            'approver_users': sorted(self.approver_users),
            'approver_roles': sorted(self.approver_roles),
            'escalation_timeout_hours': self.escalation_timeout_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        return cls(
            order=data['order'],
            name=data.get('name') or f"Step {data['order']}",
            approver_users=set(data.get('approver_users') or []),
            approver_roles=set(data.get('approver_roles') or []),
            escalation_timeout_hours=data.get('escalation_timeout_hours'),
        )


@dataclass
class ApprovalWorkflow(StorageRecord):
    """Workflow definition at one version"""
    name: str
    description: str
    version: int
    steps: List[WorkflowStep]
    trigger_conditions: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    is_active: bool = True
    created_by: str = ""
    updated_by: str = ""

    def get_step(self, order: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.order == order:
                return step
        return None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['steps'] = [step.to_dict() for step in self.steps]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalWorkflow':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['steps'] = [WorkflowStep.from_dict(s) for s in data.get('steps', [])]
        return cls(**data)


StepInput = Union[WorkflowStep, Dict[str, Any]]


def _coerce_steps(steps: List[StepInput]) -> List[WorkflowStep]:
    coerced = []
    for step in steps or []:
        if isinstance(step, WorkflowStep):
            coerced.append(copy.deepcopy(step))
        else:
            try:
                coerced.append(WorkflowStep.from_dict(step))
            except (KeyError, TypeError) as e:
                raise WorkflowValidationError(f"Malformed step definition: {e}", details={'step': step})
    return sorted(coerced, key=lambda s: s.order)


def validate_steps(steps: List[WorkflowStep]) -> None:
    """Raise WorkflowValidationError unless steps are 1..N with an approver rule each"""
    if not steps:
        raise WorkflowValidationError("Workflow must have at least one step")

    orders = [step.order for step in steps]
    if len(set(orders)) != len(orders):
        raise WorkflowValidationError("Step orders must be unique", details={'orders': orders})
    if sorted(orders) != list(range(1, len(orders) + 1)):
        raise WorkflowValidationError("Step orders must be consecutive starting at 1",
                                      details={'orders': sorted(orders)})

    for step in steps:
        if not step.approver_users and not step.approver_roles:
            raise WorkflowValidationError(
                f"Step {step.order} has no approver users or roles",
                details={'step_order': step.order}
            )
        if step.escalation_timeout_hours is not None and step.escalation_timeout_hours <= 0:
            raise WorkflowValidationError(
                f"Step {step.order} escalation timeout must be positive",
                details={'step_order': step.order}
            )


class WorkflowStore:
    """Creates, edits and serves versioned workflow definitions"""

    WORKFLOWS = 'approval_workflows'
    VERSIONS = 'approval_workflow_versions'

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit
        # Snapshots never change once written, so caching them is safe
        self._snapshots: Dict[Tuple[str, int], ApprovalWorkflow] = {}
        self._cache_lock = threading.Lock()

    @staticmethod
    def _version_key(workflow_id: str, version: int) -> str:
        return f"{workflow_id}:v{version}"

    def _write_snapshot(self, workflow: ApprovalWorkflow) -> bool:
        return self.storage.insert(self.VERSIONS, self._version_key(workflow.id, workflow.version),
                                   workflow.to_dict())

    def create_workflow(self, name: str, steps: List[StepInput], description: str = "",
                        trigger_conditions: Optional[Dict[str, Any]] = None, priority: int = 0,
                        is_active: bool = True, created_by: str = "system") -> ApprovalWorkflow:
        """Validate and store version 1 of a new workflow"""
        if not name:
            raise WorkflowValidationError("Workflow name is required")
        workflow_steps = _coerce_steps(steps)
        validate_steps(workflow_steps)

        now = datetime.now(timezone.utc)
        workflow = ApprovalWorkflow(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            description=description,
            version=1,
            steps=workflow_steps,
            trigger_conditions=dict(trigger_conditions or {}),
            priority=priority,
            is_active=is_active,
            created_by=created_by,
            updated_by=created_by
        )

        self._write_snapshot(workflow)
        self.storage.save(self.WORKFLOWS, workflow.id, workflow.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.WORKFLOW_CREATED,
                'workflow',
                workflow.id,
                {'name': name, 'version': 1, 'steps': len(workflow_steps)},
                created_by
            )
        log_action(logger, "info", f"Workflow {name} created", actor_id=created_by,
                   action="create_workflow", resource=workflow.id)
        return workflow

    def update_workflow(self, workflow_id: str, updated_by: str = "system",
                        name: Optional[str] = None, description: Optional[str] = None,
                        steps: Optional[List[StepInput]] = None,
                        trigger_conditions: Optional[Dict[str, Any]] = None,
                        priority: Optional[int] = None,
                        is_active: Optional[bool] = None) -> ApprovalWorkflow:
        """Apply an edit as a new version; earlier versions are left untouched"""
        current = self.get_workflow(workflow_id)
        if not current:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found",
                                        details={'workflow_id': workflow_id})

        updated = copy.deepcopy(current)
        changes: Dict[str, Any] = {}
        if name is not None:
            if not name:
                raise WorkflowValidationError("Workflow name is required")
            updated.name = name
            changes['name'] = name
        if description is not None:
            updated.description = description
            changes['description'] = description
        if steps is not None:
            updated.steps = _coerce_steps(steps)
            validate_steps(updated.steps)
            changes['steps'] = len(updated.steps)
        if trigger_conditions is not None:
            updated.trigger_conditions = dict(trigger_conditions)
            changes['trigger_conditions'] = True
        if priority is not None:
            updated.priority = priority
            changes['priority'] = priority
        if is_active is not None:
            updated.is_active = is_active
            changes['is_active'] = is_active

        updated.version = current.version + 1
        updated.updated_at = datetime.now(timezone.utc)
        updated.updated_by = updated_by

        # Claiming the next version key decides concurrent edits; the head swap follows
        if not self._write_snapshot(updated) or not self.storage.compare_and_swap(
                self.WORKFLOWS, workflow_id, {'version': current.version}, updated.to_dict()):
            raise ConcurrencyConflictError(
                f"Workflow {workflow_id} was modified concurrently",
                details={'workflow_id': workflow_id, 'expected_version': current.version}
            )

        if self.audit:
            self.audit.log_event(
                AuditEventType.WORKFLOW_UPDATED,
                'workflow',
                workflow_id,
                {'version': updated.version, 'changes': changes},
                updated_by
            )
        log_action(logger, "info", f"Workflow {workflow_id} updated to version {updated.version}",
                   actor_id=updated_by, action="update_workflow", resource=workflow_id)
        return updated

    def activate_workflow(self, workflow_id: str, updated_by: str = "system") -> ApprovalWorkflow:
        return self.update_workflow(workflow_id, updated_by=updated_by, is_active=True)

    def deactivate_workflow(self, workflow_id: str, updated_by: str = "system") -> ApprovalWorkflow:
        return self.update_workflow(workflow_id, updated_by=updated_by, is_active=False)

    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> Optional[ApprovalWorkflow]:
        """Current head, or the immutable snapshot of a given version"""
        if version is None:
            data = self.storage.load(self.WORKFLOWS, workflow_id)
            return ApprovalWorkflow.from_dict(data) if data else None

        key = (workflow_id, version)
        with self._cache_lock:
            cached = self._snapshots.get(key)
        if cached is None:
            data = self.storage.load(self.VERSIONS, self._version_key(workflow_id, version))
            if not data:
                return None
            cached = ApprovalWorkflow.from_dict(data)
            with self._cache_lock:
                self._snapshots[key] = cached
        return copy.deepcopy(cached)

    def list_workflows(self, include_inactive: bool = True) -> List[ApprovalWorkflow]:
        workflows = [ApprovalWorkflow.from_dict(d) for d in self.storage.load_all(self.WORKFLOWS)]
        if not include_inactive:
            workflows = [w for w in workflows if w.is_active]
        return sorted(workflows, key=lambda w: (-w.priority, w.name))

    def list_active_workflows(self) -> List[ApprovalWorkflow]:
        """Active workflows, highest priority first, then by name"""
        return self.list_workflows(include_inactive=False)

    def list_versions(self, workflow_id: str) -> List[ApprovalWorkflow]:
        versions = [ApprovalWorkflow.from_dict(d) for d in self.storage.find(self.VERSIONS, {'id': workflow_id})]
        return sorted(versions, key=lambda w: w.version)
