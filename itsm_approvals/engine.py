"""
Approval Instance Engine

The approval state machine. An instance is started against the current
version of a workflow, then advanced one sequential step at a time as
eligible approvers act on it, until it ends approved, rejected or cancelled.

State transitions on one instance are serialized twice over: an in-process
per-instance lock, and a storage compare-and-swap on
(status, current_step, revision) that protects against other processes.
Different instances never share a lock.
"""

import threading
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from .audit import AuditAction, AuditEntry, InstanceAuditLog
from .config import get_config
from .errors import (
    ConcurrencyConflictError,
    InstanceAlreadyTerminalError,
    InstanceNotFoundError,
    NoEligibleApproversError,
    NotAuthorizedError,
    ValidationError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
    WrongStepError,
)
from .events import ApprovalEvent, EventDispatcher
from .logging_config import get_logger, log_action
from .step_resolver import StepResolver
from .storage import StorageInterface, StorageRecord
from .workflows import WorkflowStore


logger = get_logger("itsm_approvals.engine")


class InstanceStatus(Enum):
    """Status of an approval instance"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"  # non-terminal alias of in_progress


TERMINAL_STATUSES = frozenset({InstanceStatus.APPROVED, InstanceStatus.REJECTED, InstanceStatus.CANCELLED})


class StepStatus(Enum):
    """Status of one step execution record"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class StepExecutionRecord:
    """Execution state of one workflow step within an instance"""
    step_order: int
    status: StepStatus = StepStatus.PENDING
    decision: Optional[str] = None
    approver_id: Optional[str] = None
    comments: Optional[str] = None
    decided_at: Optional[datetime] = None
    escalated: bool = False
    delegation_from: Optional[str] = None
    delegated_to: Optional[str] = None
    opened_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step_order': self.step_order,
            'status': self.status.value,
            'decision': self.decision,
            'approver_id': self.approver_id,
            'comments': self.comments,
            'decided_at': _format_dt(self.decided_at),
            'escalated': self.escalated,
            'delegation_from': self.delegation_from,
            'delegated_to': self.delegated_to,
            'opened_at': _format_dt(self.opened_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepExecutionRecord':
        data = dict(data)
        data['status'] = StepStatus(data['status'])
        data['decided_at'] = _parse_dt(data.get('decided_at'))
        data['opened_at'] = _parse_dt(data.get('opened_at'))
        return cls(**data)


@dataclass
class ApprovalInstance(StorageRecord):
    """One running execution of a workflow version against a subject record"""
    workflow_id: str
    workflow_version: int
    record_id: str
    record_table: str
    requested_by: str
    status: InstanceStatus = InstanceStatus.PENDING
    current_step: int = 1
    steps: List[StepExecutionRecord] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    escalation_count: int = 0
    revision: int = 0
    cancel_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def get_step_record(self, step_order: int) -> Optional[StepExecutionRecord]:
        for record in self.steps:
            if record.step_order == step_order:
                return record
        return None

    @property
    def open_step(self) -> Optional[StepExecutionRecord]:
        if self.is_terminal:
            return None
        return self.get_step_record(self.current_step)

    def cas_token(self) -> Dict[str, Any]:
        """Fields a concurrent writer must not have changed"""
        return {'status': self.status.value, 'current_step': self.current_step, 'revision': self.revision}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'workflow_id': self.workflow_id,
            'workflow_version': self.workflow_version,
            'record_id': self.record_id,
            'record_table': self.record_table,
            'requested_by': self.requested_by,
            'status': self.status.value,
            'current_step': self.current_step,
            'steps': [record.to_dict() for record in self.steps],
            'completed_at': _format_dt(self.completed_at),
            'escalation_count': self.escalation_count,
            'revision': self.revision,
            'cancel_reason': self.cancel_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalInstance':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['completed_at'] = _parse_dt(data.get('completed_at'))
        data['status'] = InstanceStatus(data['status'])
        data['steps'] = [StepExecutionRecord.from_dict(s) for s in data.get('steps', [])]
        return cls(**data)


@dataclass
class InstanceView:
    """Read-only projection returned to callers"""
    instance: ApprovalInstance
    workflow_name: str
    audit_trail: List[AuditEntry]
    eligible_approvers: Set[str] = field(default_factory=set)

    @property
    def id(self) -> str:
        return self.instance.id

    @property
    def status(self) -> InstanceStatus:
        return self.instance.status

    @property
    def current_step(self) -> int:
        return self.instance.current_step

    @property
    def steps(self) -> List[StepExecutionRecord]:
        return self.instance.steps

    @property
    def has_eligible_approvers(self) -> bool:
        return bool(self.eligible_approvers)

    def to_dict(self) -> Dict[str, Any]:
        result = self.instance.to_dict()
        result['workflow_name'] = self.workflow_name
        result['eligible_approvers'] = sorted(self.eligible_approvers)
        result['has_eligible_approvers'] = self.has_eligible_approvers
        result['audit_trail'] = [entry.to_dict() for entry in self.audit_trail]
        return result


class InstanceLocks:
    """Per-instance mutexes, created on demand and dropped when unused"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, instance_id: str):
        with self._guard:
            entry = self._locks.setdefault(instance_id, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[instance_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ApprovalEngine:
    """Starts approval instances and drives them through their steps"""

    INSTANCES = 'approval_instances'

    def __init__(self, storage: StorageInterface, workflows: WorkflowStore,
                 resolver: StepResolver, audit_log: InstanceAuditLog,
                 events: Optional[EventDispatcher] = None,
                 locks: Optional[InstanceLocks] = None):
        self.storage = storage
        self.workflows = workflows
        self.resolver = resolver
        self.permissions = resolver.permissions
        self.identity = resolver.identity
        self.audit_log = audit_log
        self.events = events or EventDispatcher()
        self.locks = locks or InstanceLocks()

    # Persistence helpers

    def _load(self, instance_id: str) -> Optional[ApprovalInstance]:
        data = self.storage.load(self.INSTANCES, instance_id)
        return ApprovalInstance.from_dict(data) if data else None

    def _require_instance(self, instance_id: str) -> ApprovalInstance:
        instance = self._load(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Approval instance {instance_id} not found",
                                        details={'instance_id': instance_id})
        return instance

    def _check_open_step(self, instance: ApprovalInstance, step_order: Optional[int]) -> None:
        if instance.is_terminal:
            raise InstanceAlreadyTerminalError(
                f"Approval instance {instance.id} is already {instance.status.value}",
                details={'instance_id': instance.id, 'status': instance.status.value}
            )
        if step_order is not None and step_order != instance.current_step:
            raise WrongStepError(
                f"Step {step_order} is not the open step of instance {instance.id}",
                details={'instance_id': instance.id, 'step_order': step_order,
                         'current_step': instance.current_step}
            )

    def _commit(self, instance: ApprovalInstance, expected: Dict[str, Any],
                step_order: Optional[int] = None) -> None:
        """Compare-and-swap the instance; classify the failure if another writer won"""
        instance.revision = expected['revision'] + 1
        instance.updated_at = datetime.now(timezone.utc)
        if self.storage.compare_and_swap(self.INSTANCES, instance.id, expected, instance.to_dict()):
            return

        current = self._require_instance(instance.id)
        logger.info(f"Lost update race on instance {instance.id} "
                    f"(now {current.status.value} at step {current.current_step})")
        self._check_open_step(current, step_order)
        raise ConcurrencyConflictError(
            f"Approval instance {instance.id} was modified concurrently",
            details={'instance_id': instance.id, 'revision': current.revision}
        )

    def _display_name(self, user_id: str) -> str:
        if user_id == "system":
            return "System"
        user = self.identity.get_user(user_id)
        return user.display_name if user else user_id

    def _record_audit(self, instance_id: str, actor_id: str, action: AuditAction,
                      details: Dict[str, Any]) -> AuditEntry:
        return self.audit_log.append(instance_id, actor_id, self._display_name(actor_id), action, details)

    def _announce_open_step(self, instance: ApprovalInstance) -> Set[str]:
        eligible = self.resolver.resolve_eligible_approvers(instance, instance.current_step)
        if eligible:
            self.events.emit(ApprovalEvent.STEP_OPENED, instance.id,
                             step_order=instance.current_step, eligible_approvers=sorted(eligible))
        else:
            log_action(logger, "warning",
                       f"No eligible approvers for step {instance.current_step} of instance {instance.id}",
                       action="no_eligible_approvers", resource=instance.id,
                       extra={'step_order': instance.current_step, 'workflow_id': instance.workflow_id})
            self.events.emit(ApprovalEvent.NO_ELIGIBLE_APPROVERS, instance.id,
                             step_order=instance.current_step)
        return eligible

    # Operations

    def start_approval(self, workflow_id: str, record_id: str, record_table: str,
                       requested_by: str) -> str:
        """Create an instance pinned to the workflow's current version; returns its id"""
        workflow = self.workflows.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found",
                                        details={'workflow_id': workflow_id})
        if not workflow.is_active:
            raise WorkflowInactiveError(f"Workflow {workflow.name} is inactive",
                                        details={'workflow_id': workflow_id})

        now = datetime.now(timezone.utc)
        instance = ApprovalInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            record_id=record_id,
            record_table=record_table,
            requested_by=requested_by,
            steps=[StepExecutionRecord(step_order=step.order) for step in workflow.steps]
        )
        instance.steps[0].opened_at = now

        self.storage.insert(self.INSTANCES, instance.id, instance.to_dict())
        self._record_audit(instance.id, requested_by, AuditAction.CREATED, {
            'workflow_id': workflow.id,
            'workflow_version': workflow.version,
            'record_id': record_id,
            'record_table': record_table,
            'step_order': 1,
        })
        log_action(logger, "info", f"Approval started for {record_table}/{record_id}",
                   actor_id=requested_by, action="start_approval", resource=instance.id,
                   extra={'workflow_id': workflow.id, 'workflow_version': workflow.version})

        self._announce_open_step(instance)
        return instance.id

    def act(self, instance_id: str, step_order: int, actor_id: str,
            decision: Union[Decision, str], comment: Optional[str] = None) -> InstanceView:
        """Approve or reject the open step on behalf of an eligible approver"""
        if not isinstance(decision, Decision):
            try:
                decision = Decision(decision)
            except ValueError:
                raise ValidationError(f"Unknown decision '{decision}'", details={'decision': decision})

        with self.locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            self._check_open_step(instance, step_order)

            eligible = self.resolver.resolve_eligible_approvers(instance, step_order)
            if not eligible:
                log_action(logger, "warning", f"No eligible approvers for step {step_order}",
                           actor_id=actor_id, action="act", resource=instance_id)
                self.events.emit(ApprovalEvent.NO_ELIGIBLE_APPROVERS, instance_id, step_order=step_order)
                raise NoEligibleApproversError(
                    f"User {actor_id} may not act on step {step_order}",
                    details={'instance_id': instance_id, 'step_order': step_order, 'actor_id': actor_id}
                )
            if actor_id not in eligible:
                log_action(logger, "warning", f"User {actor_id} is not an eligible approver",
                           actor_id=actor_id, action="act", resource=instance_id,
                           extra={'step_order': step_order})
                raise NotAuthorizedError(
                    f"User {actor_id} may not act on step {step_order}",
                    details={'instance_id': instance_id, 'step_order': step_order, 'actor_id': actor_id}
                )

            expected = instance.cas_token()
            now = datetime.now(timezone.utc)
            record = instance.get_step_record(step_order)
            record.decision = decision.value
            record.approver_id = actor_id
            record.comments = comment
            record.decided_at = now

            if decision == Decision.REJECT:
                record.status = StepStatus.REJECTED
                instance.status = InstanceStatus.REJECTED
                instance.completed_at = now
            elif step_order < instance.step_count:
                record.status = StepStatus.APPROVED
                instance.current_step = step_order + 1
                instance.status = InstanceStatus.IN_PROGRESS
                instance.get_step_record(instance.current_step).opened_at = now
            else:
                record.status = StepStatus.APPROVED
                instance.status = InstanceStatus.APPROVED
                instance.completed_at = now

            self._commit(instance, expected, step_order)
            action = AuditAction.REJECTED if decision == Decision.REJECT else AuditAction.APPROVED
            self._record_audit(instance_id, actor_id, action, {
                'step_order': step_order,
                'comments': comment,
                'status': instance.status.value,
            })

        log_action(logger, "info", f"Step {step_order} {record.status.value} by {actor_id}",
                   actor_id=actor_id, action="act", resource=instance_id,
                   extra={'status': instance.status.value, 'current_step': instance.current_step})

        if instance.is_terminal:
            self.events.emit(ApprovalEvent.COMPLETED, instance_id, status=instance.status.value)
        else:
            self._announce_open_step(instance)
        return self.get_instance(instance_id)

    def cancel_approval(self, instance_id: str, actor_id: str, reason: str) -> InstanceView:
        """Cancel a non-terminal instance; requester or holders of approvals:write only"""
        with self.locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            self._check_open_step(instance, None)

            if actor_id != instance.requested_by and not self.permissions.has_permission(actor_id, "approvals:write"):
                log_action(logger, "warning", f"User {actor_id} may not cancel instance {instance_id}",
                           actor_id=actor_id, action="cancel", resource=instance_id)
                raise NotAuthorizedError(
                    f"User {actor_id} may not cancel instance {instance_id}",
                    details={'instance_id': instance_id, 'actor_id': actor_id}
                )

            expected = instance.cas_token()
            instance.status = InstanceStatus.CANCELLED
            instance.completed_at = datetime.now(timezone.utc)
            instance.cancel_reason = reason
            self._commit(instance, expected)
            self._record_audit(instance_id, actor_id, AuditAction.CANCELLED, {
                'step_order': instance.current_step,
                'reason': reason,
            })

        log_action(logger, "info", f"Approval {instance_id} cancelled", actor_id=actor_id,
                   action="cancel", resource=instance_id)
        self.events.emit(ApprovalEvent.COMPLETED, instance_id, status=instance.status.value)
        return self.get_instance(instance_id)

    # Queries

    def _view(self, instance: ApprovalInstance) -> InstanceView:
        workflow = self.workflows.get_workflow(instance.workflow_id, instance.workflow_version)
        eligible: Set[str] = set()
        if not instance.is_terminal:
            eligible = self.resolver.resolve_eligible_approvers(instance, instance.current_step)
        return InstanceView(
            instance=instance,
            workflow_name=workflow.name if workflow else "",
            audit_trail=self.audit_log.entries_for(instance.id),
            eligible_approvers=eligible
        )

    def get_instance(self, instance_id: str) -> InstanceView:
        return self._view(self._require_instance(instance_id))

    def list_instances(self, status: Optional[Union[InstanceStatus, str]] = None,
                       workflow_id: Optional[str] = None, record_id: Optional[str] = None,
                       record_table: Optional[str] = None,
                       limit: int = 50, offset: int = 0) -> List[ApprovalInstance]:
        """Instances matching the filters, newest first"""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = status.value if isinstance(status, InstanceStatus) else InstanceStatus(status).value
        if workflow_id:
            filters['workflow_id'] = workflow_id
        if record_id:
            filters['record_id'] = record_id
        if record_table:
            filters['record_table'] = record_table

        instances = [ApprovalInstance.from_dict(d) for d in self.storage.find(self.INSTANCES, filters)]
        instances.sort(key=lambda i: i.created_at, reverse=True)
        return instances[offset:offset + limit]

    def _open_instances(self) -> List[ApprovalInstance]:
        return [
            instance for instance in
            (ApprovalInstance.from_dict(d) for d in self.storage.load_all(self.INSTANCES))
            if not instance.is_terminal
        ]

    def list_pending_for(self, user_id: str) -> List[InstanceView]:
        """Open instances whose current step the user may act on right now"""
        views = []
        for instance in sorted(self._open_instances(), key=lambda i: i.created_at):
            if self.resolver.is_eligible(instance, instance.current_step, user_id):
                views.append(self._view(instance))
        return views

    def get_analytics(self, days: Optional[int] = None) -> Dict[str, Any]:
        """Dashboard figures over the trailing window"""
        if days is None:
            days = get_config().analytics_window_days
        since = datetime.now(timezone.utc) - timedelta(days=days)
        instances = [ApprovalInstance.from_dict(d) for d in self.storage.load_all(self.INSTANCES)]
        workflows = {w.id: w for w in self.workflows.list_workflows()}

        pending = Counter(i.workflow_id for i in instances if not i.is_terminal)
        pending_by_workflow = sorted(
            ({'workflow_id': w.id, 'workflow_name': w.name, 'pending_count': pending.get(w.id, 0)}
             for w in workflows.values() if w.is_active),
            key=lambda row: -row['pending_count']
        )

        recent = [i for i in instances if i.created_at >= since]

        durations = defaultdict(list)
        for instance in recent:
            if instance.status in (InstanceStatus.APPROVED, InstanceStatus.REJECTED) and instance.completed_at:
                hours = (instance.completed_at - instance.created_at).total_seconds() / 3600
                durations[instance.workflow_id].append(hours)
        approval_times = sorted(
            ({'workflow_id': wf_id,
              'workflow_name': workflows[wf_id].name if wf_id in workflows else wf_id,
              'avg_hours': round(sum(hours) / len(hours), 4),
              'completed_count': len(hours)}
             for wf_id, hours in durations.items()),
            key=lambda row: row['avg_hours']
        )

        status_distribution = dict(Counter(i.status.value for i in recent))

        decisions = Counter(
            record.approver_id
            for instance in instances
            for record in instance.steps
            if record.approver_id and record.decided_at and record.decided_at >= since
        )
        top_approvers = [
            {'approver_id': user_id, 'approver_name': self._display_name(user_id), 'approvals_count': count}
            for user_id, count in decisions.most_common(10)
        ]

        return {
            'window_days': days,
            'pending_by_workflow': pending_by_workflow,
            'approval_times': approval_times,
            'status_distribution': status_distribution,
            'top_approvers': top_approvers,
        }
