"""
Escalation / Delegation Controller

Delegation records an advisory hand-off on the open step and leaves the set
of eligible approvers unchanged. Escalation flags the open step and moves
the instance to the non-terminal ``escalated`` status.

Timeouts are not tracked here with timers: an external scheduler calls
``escalate_overdue`` periodically.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditAction
from .config import get_config
from .engine import ApprovalEngine, InstanceStatus, InstanceView
from .errors import InvalidStateError, NotAuthorizedError, UserNotFoundError, ValidationError
from .events import ApprovalEvent
from .logging_config import get_logger, log_action


logger = get_logger("itsm_approvals.escalation")


class EscalationController:
    """Delegates and escalates open steps of approval instances"""

    def __init__(self, engine: ApprovalEngine, default_timeout_hours: Optional[float] = None):
        self.engine = engine
        if default_timeout_hours is None:
            default_timeout_hours = get_config().default_escalation_timeout_hours
        self.default_timeout_hours = default_timeout_hours

    def delegate(self, instance_id: str, step_order: int, from_user_id: str,
                 to_user_id: str, reason: str) -> InstanceView:
        engine = self.engine
        with engine.locks.hold(instance_id):
            instance = engine._require_instance(instance_id)
            engine._check_open_step(instance, step_order)

            if not engine.resolver.is_eligible(instance, step_order, from_user_id):
                log_action(logger, "warning", f"User {from_user_id} may not delegate step {step_order}",
                           actor_id=from_user_id, action="delegate", resource=instance_id)
                raise NotAuthorizedError(
                    f"User {from_user_id} is not an eligible approver for step {step_order}",
                    details={'instance_id': instance_id, 'step_order': step_order}
                )
            if engine.identity.get_user(to_user_id) is None:
                raise UserNotFoundError(f"User {to_user_id} not found", details={'user_id': to_user_id})
            if to_user_id == from_user_id:
                raise ValidationError("Cannot delegate a step to yourself",
                                      details={'user_id': to_user_id})

            expected = instance.cas_token()
            record = instance.get_step_record(step_order)
            record.delegation_from = from_user_id
            record.delegated_to = to_user_id
            engine._commit(instance, expected, step_order)

            delegate_eligible = engine.resolver.is_eligible(instance, step_order, to_user_id)
            engine._record_audit(instance_id, from_user_id, AuditAction.DELEGATED, {
                'step_order': step_order,
                'delegation_from': from_user_id,
                'delegated_to': to_user_id,
                'reason': reason,
                'delegate_is_eligible': delegate_eligible,
            })

        if not delegate_eligible:
            log_action(logger, "warning",
                       f"Step {step_order} delegated to {to_user_id}, who is not an eligible approver",
                       actor_id=from_user_id, action="delegate", resource=instance_id)
        engine.events.emit(ApprovalEvent.STEP_DELEGATED, instance_id, step_order=step_order,
                           delegation_from=from_user_id, delegated_to=to_user_id)
        return engine.get_instance(instance_id)

    def escalate(self, instance_id: str, step_order: int, reason: str,
                 actor_id: str = "system") -> InstanceView:
        engine = self.engine
        with engine.locks.hold(instance_id):
            instance = engine._require_instance(instance_id)
            engine._check_open_step(instance, step_order)

            expected = instance.cas_token()
            instance.get_step_record(step_order).escalated = True
            instance.escalation_count += 1
            instance.status = InstanceStatus.ESCALATED
            engine._commit(instance, expected, step_order)

            engine._record_audit(instance_id, actor_id, AuditAction.ESCALATED, {
                'step_order': step_order,
                'reason': reason,
                'escalation_count': instance.escalation_count,
            })

        log_action(logger, "warning", f"Step {step_order} of instance {instance_id} escalated: {reason}",
                   actor_id=actor_id, action="escalate", resource=instance_id,
                   extra={'escalation_count': instance.escalation_count})
        engine.events.emit(ApprovalEvent.STEP_ESCALATED, instance_id, step_order=step_order,
                           reason=reason, escalation_count=instance.escalation_count)
        return engine.get_instance(instance_id)

    def find_overdue_steps(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open steps older than their escalation timeout that have not been escalated yet"""
        now = now or datetime.now(timezone.utc)
        overdue = []
        for instance in self.engine._open_instances():
            record = instance.open_step
            if record is None or record.escalated or record.opened_at is None:
                continue

            workflow = self.engine.workflows.get_workflow(instance.workflow_id, instance.workflow_version)
            step = workflow.get_step(instance.current_step) if workflow else None
            timeout = step.escalation_timeout_hours if step and step.escalation_timeout_hours else self.default_timeout_hours
            if not timeout:
                continue

            deadline = record.opened_at + timedelta(hours=timeout)
            if now > deadline:
                overdue.append({
                    'instance_id': instance.id,
                    'step_order': instance.current_step,
                    'opened_at': record.opened_at,
                    'timeout_hours': timeout,
                    'overdue_hours': round((now - deadline).total_seconds() / 3600, 4),
                })
        return overdue

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[InstanceView]:
        """Escalate every overdue step once; for use by an external scheduler"""
        escalated = []
        for breach in self.find_overdue_steps(now):
            try:
                escalated.append(self.escalate(
                    breach['instance_id'],
                    breach['step_order'],
                    f"Step open longer than {breach['timeout_hours']} hours",
                ))
            except InvalidStateError as e:
                # Decided or cancelled between the scan and the escalation
                logger.info(f"Skipped escalation of {breach['instance_id']}: {e.message}")
        return escalated
