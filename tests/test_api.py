"""
Integration tests for the approval engine API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from itsm_approvals.api import create_app
from itsm_approvals.api.deps import ApprovalSystem
from itsm_approvals.config import ApprovalsConfig
from itsm_approvals.storage import InMemoryStorage


@pytest.fixture
def system():
    """Approval system on in-memory storage, isolated per test"""
    settings = ApprovalsConfig(storage_backend="memory", bootstrap_admin_id="admin")
    return ApprovalSystem(settings=settings, storage=InMemoryStorage())


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


@pytest.fixture
def seeded(client):
    """Manager role, four users and the two-step purchase workflow"""
    role = client.post("/rbac/roles", json={
        "actor_id": "admin", "name": "manager", "permissions": ["approvals:read", "approvals:act"]
    }).json()
    for user_id, roles in [("u1", [role["id"]]), ("u2", []), ("u9", []), ("r1", ["system-requester"])]:
        r = client.post("/rbac/users", json={
            "actor_id": "admin", "id": user_id, "username": user_id, "email": f"{user_id}@example.com",
            "full_name": user_id.upper(), "roles": roles
        })
        assert r.status_code == 201

    workflow = client.post("/approvals/workflows", json={
        "actor_id": "admin",
        "name": "Purchase Request",
        "steps": [
            {"order": 1, "name": "Manager review", "approver_roles": ["manager"]},
            {"order": 2, "name": "Finance sign-off", "approver_users": ["u9"]},
        ],
    })
    assert workflow.status_code == 201
    return {"role": role, "workflow": workflow.json()}


@pytest.fixture
def instance(client, seeded):
    r = client.post("/approvals/instances", json={
        "actor_id": "r1", "workflow_id": seeded["workflow"]["id"],
        "record_id": "PR-1001", "record_table": "purchase_requests"
    })
    assert r.status_code == 201
    return r.json()


class TestHealthEndpoint:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "service": "itsm_approvals_api", "version": "1.0.0"}


class TestWorkflowEndpoints:

    def test_create_and_fetch_versions(self, client, seeded):
        workflow_id = seeded["workflow"]["id"]
        r = client.put(f"/approvals/workflows/{workflow_id}", json={
            "actor_id": "admin", "description": "Now with finance"
        })
        assert r.status_code == 200
        assert r.json()["version"] == 2

        assert client.get(f"/approvals/workflows/{workflow_id}").json()["version"] == 2
        assert client.get(f"/approvals/workflows/{workflow_id}", params={"version": 1}).json()["description"] == ""
        assert client.get("/approvals/workflows").json()["count"] == 1

    def test_invalid_workflow(self, client, seeded):
        r = client.post("/approvals/workflows", json={
            "actor_id": "admin", "name": "Broken",
            "steps": [{"order": 1}, {"order": 3, "approver_users": ["u1"]}]
        })
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "WORKFLOW_VALIDATION_ERROR"

    def test_missing_workflow_version(self, client, seeded):
        r = client.get(f"/approvals/workflows/{seeded['workflow']['id']}", params={"version": 9})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "WORKFLOW_NOT_FOUND"


class TestApprovalFlow:

    def test_start_returns_pending_view(self, instance):
        assert instance["status"] == "pending"
        assert instance["current_step"] == 1
        assert instance["workflow_name"] == "Purchase Request"
        assert instance["eligible_approvers"] == ["u1"]
        assert [e["action"] for e in instance["audit_trail"]] == ["created"]

    def test_approve_both_steps(self, client, instance):
        url = f"/approvals/instances/{instance['id']}/action"

        r = client.post(url, json={"actor_id": "u1", "step_order": 1, "decision": "approve"})
        assert r.status_code == 200
        assert r.json()["status"] == "in_progress"
        assert r.json()["current_step"] == 2

        r = client.post(url, json={"actor_id": "u9", "step_order": 2, "decision": "approve", "comment": "ok"})
        assert r.json()["status"] == "approved"
        assert r.json()["completed_at"] is not None

    def test_reject_then_act_again(self, client, instance):
        url = f"/approvals/instances/{instance['id']}/action"
        r = client.post(url, json={
            "actor_id": "u1", "step_order": 1, "decision": "reject", "comment": "budget exceeded"
        })
        assert r.json()["status"] == "rejected"
        assert r.json()["audit_trail"][-1]["details"]["comments"] == "budget exceeded"

        r = client.post(url, json={"actor_id": "u9", "step_order": 2, "decision": "approve"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "INSTANCE_ALREADY_TERMINAL"

    @pytest.mark.parametrize("body,status_code,code", [
        ({"actor_id": "u2", "step_order": 1, "decision": "approve"}, 403, "NOT_AUTHORIZED"),
        ({"actor_id": "u9", "step_order": 2, "decision": "approve"}, 409, "WRONG_STEP"),
        ({"actor_id": "u1", "step_order": 1, "decision": "maybe"}, 422, "VALIDATION_ERROR"),
        ({"actor_id": "u1", "step_order": 0, "decision": "approve"}, 422, "VALIDATION_ERROR"),
    ])
    def test_action_errors(self, client, instance, body, status_code, code):
        r = client.post(f"/approvals/instances/{instance['id']}/action", json=body)
        assert r.status_code == status_code
        assert r.json()["error"]["code"] == code

    def test_unknown_instance(self, client, seeded):
        r = client.get("/approvals/instances/missing")
        assert r.status_code == 404
        assert r.json()["error"] == {
            "code": "INSTANCE_NOT_FOUND",
            "message": "Approval instance missing not found",
            "details": {"instance_id": "missing"},
        }

    def test_empty_eligible_set_is_not_authorized(self, client, instance):
        client.patch("/rbac/users/u1", json={"actor_id": "admin", "is_locked": True})

        r = client.post(f"/approvals/instances/{instance['id']}/action",
                        json={"actor_id": "u2", "step_order": 1, "decision": "approve"})
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "NOT_AUTHORIZED"
        assert client.get(f"/approvals/instances/{instance['id']}").json()["has_eligible_approvers"] is False

    def test_cancel(self, client, instance):
        url = f"/approvals/instances/{instance['id']}/cancel"

        r = client.post(url, json={"actor_id": "u1", "reason": "not mine"})
        assert r.status_code == 403

        r = client.post(url, json={"actor_id": "r1", "reason": "duplicate"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

    def test_escalate_and_delegate(self, client, instance):
        base = f"/approvals/instances/{instance['id']}"

        r = client.post(f"{base}/escalate", json={"actor_id": "admin", "step_order": 1, "reason": "timeout"})
        assert r.json()["status"] == "escalated"
        assert r.json()["escalation_count"] == 1

        r = client.post(f"{base}/delegate", json={
            "actor_id": "u1", "step_order": 1, "to_user_id": "u2", "reason": "holiday"
        })
        assert r.status_code == 200
        assert r.json()["steps"][0]["delegated_to"] == "u2"

        r = client.post(f"{base}/action", json={"actor_id": "u1", "step_order": 1, "decision": "approve"})
        assert r.json()["current_step"] == 2


class TestQueries:

    def test_pending_and_listing(self, client, instance):
        assert client.get("/approvals/pending/u1").json()["count"] == 1
        assert client.get("/approvals/pending/u9").json()["count"] == 0

        r = client.get("/approvals/instances", params={"status": "pending"})
        assert [i["id"] for i in r.json()["instances"]] == [instance["id"]]
        assert client.get("/approvals/instances", params={"status": "approved"}).json()["count"] == 0

    def test_invalid_status_filter(self, client, seeded):
        r = client.get("/approvals/instances", params={"status": "unknown"})
        assert r.status_code == 422

    def test_analytics(self, client, instance):
        r = client.get("/approvals/analytics/dashboard", params={"days": 7})
        assert r.status_code == 200
        data = r.json()
        assert data["window_days"] == 7
        assert data["status_distribution"] == {"pending": 1}
        assert data["pending_by_workflow"][0]["pending_count"] == 1


class TestRBACEndpoints:

    def test_effective_permissions_include_groups(self, client, seeded):
        group = client.post("/rbac/groups", json={"actor_id": "admin", "name": "Managers"}).json()
        client.post(f"/rbac/groups/{group['id']}/roles", json={"actor_id": "admin", "role_id": seeded["role"]["id"]})
        client.post("/rbac/users/u2/groups", json={"actor_id": "admin", "group_id": group["id"]})

        r = client.get("/rbac/users/u2/permissions")
        assert r.json() == {
            "user_id": "u2",
            "roles": ["manager"],
            "permissions": ["approvals:act", "approvals:read"],
        }
        assert [m["id"] for m in client.get(f"/rbac/groups/{group['id']}/members").json()["members"]] == ["u2"]

    def test_system_roles_are_immutable(self, client):
        r = client.delete("/rbac/roles/system-admin", params={"actor_id": "admin"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "SYSTEM_ROLE_IMMUTABLE"

    def test_duplicate_username(self, client, seeded):
        r = client.post("/rbac/users", json={
            "actor_id": "admin", "username": "u1", "email": "x@example.com", "full_name": "X"
        })
        assert r.status_code == 422

    def test_unknown_user(self, client):
        assert client.get("/rbac/users/ghost").status_code == 404
        assert client.get("/rbac/users/ghost/permissions").status_code == 404

    def test_role_assignment(self, client, seeded):
        role_id = seeded["role"]["id"]
        r = client.post("/rbac/users/u2/roles", json={"actor_id": "admin", "role_id": role_id})
        assert r.json()["roles"] == [role_id]
        assert client.delete(f"/rbac/users/u2/roles/{role_id}", params={"actor_id": "admin"}).json()["roles"] == []


class TestRouteGuards:

    def test_bootstrap_admin_holds_admin_role(self, client):
        assert client.get("/rbac/users/admin/permissions").json()["roles"] == ["admin"]

    def test_user_without_roles_cannot_grant_itself_a_step(self, client, instance, seeded):
        grant = client.post("/rbac/users/u2/roles", json={"actor_id": "u2", "role_id": seeded["role"]["id"]})
        assert grant.status_code == 403
        assert grant.json()["error"]["details"] == {"actor_id": "u2", "permission": "rbac:write"}

        r = client.post(f"/approvals/instances/{instance['id']}/action",
                        json={"actor_id": "u2", "step_order": 1, "decision": "approve"})
        assert r.status_code == 403
        assert client.get("/rbac/users/u2").json()["roles"] == []

    @pytest.mark.parametrize("method,path,body", [
        ("post", "/approvals/workflows", {"name": "Sneaky", "steps": [{"order": 1, "approver_users": ["u2"]}]}),
        ("put", "/approvals/workflows/{workflow_id}", {"description": "edited"}),
        ("post", "/approvals/instances", {"workflow_id": "{workflow_id}", "record_id": "PR-9",
                                          "record_table": "purchase_requests"}),
        ("post", "/rbac/roles", {"name": "self-service", "permissions": ["*"]}),
        ("post", "/rbac/groups", {"name": "Mine"}),
        ("patch", "/rbac/users/u1", {"is_locked": True}),
        ("post", "/rbac/users/u2/groups", {"group_id": "g1"}),
    ])
    def test_guarded_writes_refuse_unprivileged_actor(self, client, seeded, method, path, body):
        workflow_id = seeded["workflow"]["id"]
        payload = {k: v.format(workflow_id=workflow_id) if isinstance(v, str) else v for k, v in body.items()}

        r = getattr(client, method)(path.format(workflow_id=workflow_id), json={"actor_id": "u2", **payload})

        assert r.status_code == 403
        assert r.json()["error"]["code"] == "NOT_AUTHORIZED"
        assert client.get(f"/approvals/workflows/{workflow_id}").json()["version"] == 1

    def test_escalation_needs_write_permission(self, client, instance):
        r = client.post(f"/approvals/instances/{instance['id']}/escalate",
                        json={"actor_id": "u1", "step_order": 1, "reason": "impatient"})
        assert r.status_code == 403
        assert client.get(f"/approvals/instances/{instance['id']}").json()["status"] == "pending"

    def test_delete_needs_actor(self, client, seeded):
        r = client.delete(f"/rbac/users/u1/roles/{seeded['role']['id']}")
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

        r = client.delete(f"/rbac/users/u1/roles/{seeded['role']['id']}", params={"actor_id": "u1"})
        assert r.status_code == 403

    def test_rbac_write_can_be_delegated(self, client, seeded):
        role = client.post("/rbac/roles", json={
            "actor_id": "admin", "name": "identity_admin", "permissions": ["rbac:write"]
        }).json()
        client.post("/rbac/users/u2/roles", json={"actor_id": "admin", "role_id": role["id"]})

        r = client.post("/rbac/users/u9/roles", json={"actor_id": "u2", "role_id": seeded["role"]["id"]})
        assert r.status_code == 200
        assert r.json()["roles"] == [seeded["role"]["id"]]

        # rbac:write does not extend to workflow definitions
        r = client.put(f"/approvals/workflows/{seeded['workflow']['id']}",
                       json={"actor_id": "u2", "description": "edited"})
        assert r.status_code == 403


class TestUnexpectedErrors:

    def test_internal_errors_are_not_leaked(self, system):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        system.engine.list_pending_for = explode
        client = TestClient(create_app(system), raise_server_exceptions=False)

        r = client.get("/approvals/pending/u1")
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "disk on fire" not in r.text
