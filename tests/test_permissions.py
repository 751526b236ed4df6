"""
Tests for effective role and permission resolution
"""

from datetime import datetime, timezone

import pytest

from itsm_approvals.identity import Group, Permission, RecordStatus, Role, User
from itsm_approvals.permissions import (
    PermissionResolver, effective_role_names, expand_group_ancestry, permission_matches
)


NOW = datetime.now(timezone.utc)


def make_role(role_id, name, permissions=(), status=RecordStatus.ACTIVE):
    return Role(id=role_id, created_at=NOW, updated_at=NOW, name=name,
                permissions=list(permissions), status=status)


def make_group(group_id, parent=None, role_ids=(), status=RecordStatus.ACTIVE):
    return Group(id=group_id, created_at=NOW, updated_at=NOW, name=group_id,
                 parent_group_id=parent, role_ids=list(role_ids), status=status)


def make_user(roles=(), group_ids=(), is_active=True, is_locked=False):
    return User(id="u", created_at=NOW, updated_at=NOW, username="u", email="u@example.com",
                full_name="U", roles=list(roles), group_ids=list(group_ids),
                is_active=is_active, is_locked=is_locked)


class TestGroupAncestry:

    def test_walks_to_root(self):
        parents = {"team": "dept", "dept": "org", "org": None}
        assert expand_group_ancestry(["team"], parents.get) == {"team", "dept", "org"}

    def test_terminates_on_cycle(self):
        parents = {"a": "b", "b": "c", "c": "a"}
        assert expand_group_ancestry(["a"], parents.get) == {"a", "b", "c"}

    def test_self_parent(self):
        assert expand_group_ancestry(["a"], {"a": "a"}.get) == {"a"}

    def test_multiple_starting_groups(self):
        parents = {"x": "root", "y": "root"}
        assert expand_group_ancestry(["x", "y"], parents.get) == {"x", "y", "root"}


class TestEffectiveRoleNames:

    @pytest.fixture
    def roles(self):
        return {
            "r-mgr": make_role("r-mgr", "manager"),
            "r-cab": make_role("r-cab", "cab_member"),
            "r-old": make_role("r-old", "retired", status=RecordStatus.INACTIVE),
        }

    def test_direct_roles(self, roles):
        user = make_user(roles=["r-mgr", "r-missing"])
        assert effective_role_names(user, roles, {}) == {"manager"}

    def test_inherited_through_parent_chain(self, roles):
        groups = {
            "team": make_group("team", parent="dept"),
            "dept": make_group("dept", role_ids=["r-cab"]),
        }
        user = make_user(group_ids=["team"])
        assert effective_role_names(user, roles, groups) == {"cab_member"}

    def test_group_roles_disabled(self, roles):
        groups = {"dept": make_group("dept", role_ids=["r-cab"])}
        user = make_user(roles=["r-mgr"], group_ids=["dept"])
        assert effective_role_names(user, roles, groups, include_groups=False) == {"manager"}

    def test_cyclic_groups_terminate(self, roles):
        groups = {
            "a": make_group("a", parent="b", role_ids=["r-mgr"]),
            "b": make_group("b", parent="a", role_ids=["r-cab"]),
        }
        user = make_user(group_ids=["a"])
        assert effective_role_names(user, roles, groups) == {"manager", "cab_member"}

    def test_inactive_roles_and_groups_grant_nothing(self, roles):
        groups = {
            "team": make_group("team", parent="dept", role_ids=["r-mgr"], status=RecordStatus.INACTIVE),
            "dept": make_group("dept", role_ids=["r-cab"]),
        }
        user = make_user(roles=["r-old"], group_ids=["team"])
        assert effective_role_names(user, roles, groups) == set()

    @pytest.mark.parametrize("user", [
        None,
        make_user(roles=["r-mgr"], is_active=False),
        make_user(roles=["r-mgr"], is_locked=True),
    ])
    def test_unavailable_users_fail_closed(self, roles, user):
        assert effective_role_names(user, roles, {}) == set()


class TestPermissionMatching:

    @pytest.mark.parametrize("granted,required,expected", [
        ({"approvals:write"}, "approvals:write", True),
        ({"approvals:*"}, "approvals:write", True),
        ({"*:write"}, "approvals:write", True),
        ({"*"}, "audit:read", True),
        ({"approvals:read"}, "approvals:write", False),
        ({"audit:*"}, "approvals:write", False),
        (set(), "approvals:read", False),
    ])
    def test_wildcards(self, granted, required, expected):
        granted = {Permission.parse(p) for p in granted}
        assert permission_matches(granted, Permission.parse(required)) is expected


class TestPermissionResolver:

    def test_resolves_direct_and_group_roles(self, identity, permissions, users):
        cab = identity.create_role("cab_member", ["changes:approve"])
        org = identity.create_group("Org", role_ids=[cab.id])
        team = identity.create_group("Team", parent_group_id=org.id)
        identity.add_user_to_group("u2", team.id)

        assert permissions.resolve_effective_role_names("u2") == {"cab_member"}
        assert permissions.has_permission("u2", "changes:approve")
        assert not permissions.has_permission("u2", "approvals:act")
        assert permissions.resolve_effective_role_names("u1") == {"manager"}

    def test_group_roles_can_be_disabled(self, identity, users):
        cab = identity.create_role("cab_member", ["changes:approve"])
        group = identity.create_group("CAB", role_ids=[cab.id])
        identity.add_user_to_group("u2", group.id)

        resolver = PermissionResolver(identity, group_derived_roles=False)
        assert resolver.resolve_effective_role_names("u2") == set()

    def test_cycle_in_stored_groups(self, identity, permissions, users):
        cab = identity.create_role("cab_member", ["changes:approve"])
        a = identity.create_group("A")
        b = identity.create_group("B", parent_group_id=a.id, role_ids=[cab.id])
        identity.update_group(a.id, parent_group_id=b.id)
        identity.add_user_to_group("u2", a.id)

        assert permissions.resolve_effective_role_names("u2") == {"cab_member"}

    def test_unknown_user_has_nothing(self, permissions):
        assert permissions.resolve_effective_permissions("ghost") == set()
        assert not permissions.has_permission("ghost", "approvals:read")

    def test_admin_wildcard(self, identity, permissions):
        identity.create_user("root", "root@example.com", "Root", roles=["system-admin"], user_id="root")
        assert permissions.has_permission("root", "approvals:write")
        assert permissions.has_permission("root", "anything:at_all")

    def test_locked_user_loses_permissions(self, identity, permissions, users):
        assert permissions.has_permission("u1", "approvals:act")
        identity.lock_user("u1")
        assert not permissions.has_permission("u1", "approvals:act")

    def test_deleted_role_stops_granting(self, identity, permissions, users, manager_role):
        identity.delete_role(manager_role.id)
        assert permissions.resolve_effective_role_names("u1") == set()
