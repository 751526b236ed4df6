"""
Step Resolver

Determines which users may act on a step of an approval instance. The set is
computed from current identity data on every call and never stored on the
instance, so role and membership changes apply immediately to undecided
steps.
"""

from typing import Optional, Set

from .permissions import PermissionResolver, effective_role_names
from .workflows import WorkflowStep, WorkflowStore


class StepResolver:
    """Resolves eligible approvers via the PermissionResolver"""

    def __init__(self, workflows: WorkflowStore, permissions: PermissionResolver):
        self.workflows = workflows
        self.permissions = permissions
        self.identity = permissions.identity

    def _step_for(self, instance, step_order: int) -> Optional[WorkflowStep]:
        workflow = self.workflows.get_workflow(instance.workflow_id, instance.workflow_version)
        if workflow is None:
            return None
        return workflow.get_step(step_order)

    def eligible_for_step(self, step: WorkflowStep) -> Set[str]:
        """
        Explicit approver users that exist and are available, plus every
        available user whose effective role names intersect the step's roles.
        """
        snapshot = self.identity.snapshot()
        users = snapshot['users']

        eligible = {
            user_id for user_id in step.approver_users
            if user_id in users and users[user_id].is_available
        }

        if step.approver_roles:
            for user in users.values():
                if user.id in eligible or not user.is_available:
                    continue
                names = effective_role_names(user, snapshot['roles'], snapshot['groups'],
                                             self.permissions.group_derived_roles)
                if names & step.approver_roles:
                    eligible.add(user.id)

        return eligible

    def resolve_eligible_approvers(self, instance, step_order: int) -> Set[str]:
        """Eligible approvers for ``step_order`` of the instance's pinned workflow version"""
        step = self._step_for(instance, step_order)
        if step is None:
            return set()
        return self.eligible_for_step(step)

    def is_eligible(self, instance, step_order: int, user_id: str) -> bool:
        step = self._step_for(instance, step_order)
        if step is None:
            return False

        user = self.identity.get_user(user_id)
        if user is None or not user.is_available:
            return False
        if user_id in step.approver_users:
            return True
        return bool(self.permissions.resolve_effective_role_names(user_id) & step.approver_roles)
