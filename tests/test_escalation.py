"""
Tests for delegation, escalation and the overdue-step scan
"""

from datetime import timedelta

import pytest

from itsm_approvals.audit import AuditAction
from itsm_approvals.engine import Decision, InstanceStatus
from itsm_approvals.errors import NotAuthorizedError, UserNotFoundError, ValidationError, WrongStepError
from itsm_approvals.escalation import EscalationController
from itsm_approvals.events import ApprovalEvent
from itsm_approvals.workflows import WorkflowStep


class TestEscalate:

    def test_escalated_step_stays_actable(self, engine, escalation, published, instance_id):
        view = escalation.escalate(instance_id, 1, "timeout")

        assert view.status == InstanceStatus.ESCALATED
        assert view.instance.escalation_count == 1
        assert view.steps[0].escalated
        assert not view.instance.is_terminal
        assert view.audit_trail[-1].action == AuditAction.ESCALATED
        assert view.audit_trail[-1].actor_display_name == "System"
        assert published[-1].event_type == ApprovalEvent.STEP_ESCALATED
        assert published[-1].data == {'step_order': 1, 'reason': "timeout", 'escalation_count': 1}

        view = engine.act(instance_id, 1, "u1", Decision.APPROVE)

        assert view.current_step == 2
        assert view.status == InstanceStatus.IN_PROGRESS
        assert view.instance.escalation_count == 1

    def test_escalating_twice_counts_both(self, escalation, instance_id):
        escalation.escalate(instance_id, 1, "timeout")
        view = escalation.escalate(instance_id, 1, "still waiting", actor_id="u1")

        assert view.instance.escalation_count == 2
        assert view.audit_trail[-1].actor_id == "u1"

    def test_escalated_instance_can_be_cancelled(self, engine, escalation, instance_id):
        escalation.escalate(instance_id, 1, "timeout")
        assert engine.cancel_approval(instance_id, "r1", "gave up").status == InstanceStatus.CANCELLED

    def test_escalate_wrong_step(self, escalation, instance_id):
        with pytest.raises(WrongStepError):
            escalation.escalate(instance_id, 2, "timeout")

    def test_escalated_last_step_completes(self, engine, escalation, instance_id):
        engine.act(instance_id, 1, "u1", Decision.APPROVE)
        escalation.escalate(instance_id, 2, "timeout")

        assert engine.act(instance_id, 2, "u9", Decision.APPROVE).status == InstanceStatus.APPROVED


class TestDelegate:

    def test_delegation_is_recorded_without_changing_eligibility(self, engine, escalation, published, instance_id):
        view = escalation.delegate(instance_id, 1, "u1", "u2", "on holiday")

        record = view.steps[0]
        assert (record.delegation_from, record.delegated_to) == ("u1", "u2")
        assert view.eligible_approvers == {"u1"}
        assert view.status == InstanceStatus.PENDING
        assert view.audit_trail[-1].action == AuditAction.DELEGATED
        assert view.audit_trail[-1].details['delegate_is_eligible'] is False
        assert published[-1].event_type == ApprovalEvent.STEP_DELEGATED

        with pytest.raises(NotAuthorizedError):
            engine.act(instance_id, 1, "u2", Decision.APPROVE)
        assert engine.act(instance_id, 1, "u1", Decision.APPROVE).current_step == 2

    def test_delegate_to_eligible_user(self, escalation, identity, manager_role, instance_id):
        identity.assign_role("u2", manager_role.id)
        view = escalation.delegate(instance_id, 1, "u1", "u2", "workload")

        assert view.audit_trail[-1].details['delegate_is_eligible'] is True

    def test_only_eligible_users_can_delegate(self, escalation, instance_id):
        with pytest.raises(NotAuthorizedError):
            escalation.delegate(instance_id, 1, "u2", "u9", "not mine")

    def test_delegate_to_unknown_user(self, escalation, instance_id):
        with pytest.raises(UserNotFoundError):
            escalation.delegate(instance_id, 1, "u1", "ghost", "holiday")

    def test_delegate_to_self(self, escalation, instance_id):
        with pytest.raises(ValidationError):
            escalation.delegate(instance_id, 1, "u1", "u1", "holiday")

    def test_delegate_wrong_step(self, escalation, instance_id):
        with pytest.raises(WrongStepError):
            escalation.delegate(instance_id, 2, "u9", "u1", "holiday")


class TestOverdueScan:

    @pytest.fixture
    def timed_workflow(self, workflows, users):
        return workflows.create_workflow("Timed", [
            WorkflowStep(order=1, approver_users={"u1"}, escalation_timeout_hours=4),
            WorkflowStep(order=2, approver_users={"u9"}),
        ])

    def test_steps_past_their_timeout_are_overdue(self, engine, escalation, timed_workflow, instance_id):
        timed_id = engine.start_approval(timed_workflow.id, "CHG-1", "changes", "r1")
        opened_at = engine.get_instance(timed_id).steps[0].opened_at

        assert escalation.find_overdue_steps(opened_at + timedelta(hours=3)) == []

        overdue = escalation.find_overdue_steps(opened_at + timedelta(hours=5))
        assert [(o['instance_id'], o['step_order'], o['timeout_hours']) for o in overdue] == [(timed_id, 1, 4)]
        assert overdue[0]['overdue_hours'] == pytest.approx(1, abs=0.01)

    def test_default_timeout_applies_to_steps_without_one(self, engine, two_step_workflow, instance_id):
        controller = EscalationController(engine, default_timeout_hours=24)
        opened_at = engine.get_instance(instance_id).steps[0].opened_at

        overdue = controller.find_overdue_steps(opened_at + timedelta(hours=25))
        assert [o['timeout_hours'] for o in overdue] == [24]

    def test_escalate_overdue_escalates_once(self, engine, escalation, timed_workflow):
        timed_id = engine.start_approval(timed_workflow.id, "CHG-1", "changes", "r1")
        later = engine.get_instance(timed_id).steps[0].opened_at + timedelta(hours=5)

        escalated = escalation.escalate_overdue(later)
        assert [v.id for v in escalated] == [timed_id]
        assert escalated[0].status == InstanceStatus.ESCALATED

        assert escalation.escalate_overdue(later) == []
        assert engine.get_instance(timed_id).instance.escalation_count == 1

    def test_timeout_restarts_on_the_next_step(self, engine, escalation, workflows, users):
        workflow = workflows.create_workflow("Two timed", [
            WorkflowStep(order=1, approver_users={"u1"}, escalation_timeout_hours=1),
            WorkflowStep(order=2, approver_users={"u9"}, escalation_timeout_hours=1),
        ])
        instance_id = engine.start_approval(workflow.id, "CHG-2", "changes", "r1")
        view = engine.act(instance_id, 1, "u1", Decision.APPROVE)
        step_two_opened = view.steps[1].opened_at

        assert escalation.find_overdue_steps(step_two_opened + timedelta(minutes=30)) == []
        assert len(escalation.find_overdue_steps(step_two_opened + timedelta(hours=2))) == 1

    def test_terminal_instances_are_ignored(self, engine, escalation, timed_workflow):
        timed_id = engine.start_approval(timed_workflow.id, "CHG-1", "changes", "r1")
        later = engine.get_instance(timed_id).steps[0].opened_at + timedelta(hours=5)
        engine.cancel_approval(timed_id, "r1", "withdrawn")

        assert escalation.find_overdue_steps(later) == []
