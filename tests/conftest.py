"""
Shared fixtures for the approval engine test suite
"""

import pytest

from itsm_approvals.audit import AuditTrail, InstanceAuditLog
from itsm_approvals.engine import ApprovalEngine
from itsm_approvals.escalation import EscalationController
from itsm_approvals.events import EventDispatcher
from itsm_approvals.identity import IdentityStore
from itsm_approvals.permissions import PermissionResolver
from itsm_approvals.step_resolver import StepResolver
from itsm_approvals.storage import InMemoryStorage
from itsm_approvals.workflows import WorkflowStep, WorkflowStore


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def identity(storage, audit):
    return IdentityStore(storage, audit)


@pytest.fixture
def permissions(identity):
    return PermissionResolver(identity, group_derived_roles=True)


@pytest.fixture
def workflows(storage, audit):
    return WorkflowStore(storage, audit)


@pytest.fixture
def resolver(workflows, permissions):
    return StepResolver(workflows, permissions)


@pytest.fixture
def audit_log(storage, audit):
    return InstanceAuditLog(storage, audit)


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def published(events):
    """Every event the engine publishes, in order"""
    received = []
    events.subscribe_all(received.append)
    return received


@pytest.fixture
def engine(storage, workflows, resolver, audit_log, events):
    return ApprovalEngine(storage, workflows, resolver, audit_log, events)


@pytest.fixture
def escalation(engine):
    return EscalationController(engine, default_timeout_hours=None)


@pytest.fixture
def manager_role(identity):
    return identity.create_role("manager", ["approvals:read", "approvals:act"], created_by="admin")


@pytest.fixture
def users(identity, manager_role):
    """u1 is a manager, u9 an explicit approver, u2 nobody in particular, r1 the requester"""
    return {
        'u1': identity.create_user("u1", "u1@example.com", "Una One", roles=[manager_role.id], user_id="u1"),
        'u2': identity.create_user("u2", "u2@example.com", "Udo Two", user_id="u2"),
        'u9': identity.create_user("u9", "u9@example.com", "Uma Nine", user_id="u9"),
        'r1': identity.create_user("r1", "r1@example.com", "Rae Requester",
                                   roles=["system-requester"], user_id="r1"),
    }


@pytest.fixture
def two_step_workflow(workflows, users):
    """Step 1 routed to the manager role, step 2 to u9 explicitly"""
    return workflows.create_workflow(
        name="Purchase Request",
        steps=[
            WorkflowStep(order=1, name="Manager review", approver_roles={"manager"}),
            WorkflowStep(order=2, name="Finance sign-off", approver_users={"u9"}),
        ],
        created_by="admin"
    )


@pytest.fixture
def instance_id(engine, two_step_workflow):
    return engine.start_approval(two_step_workflow.id, "PR-1001", "purchase_requests", "r1")
