"""
Permission Resolver

Computes a user's effective roles and permissions from direct role
assignments plus, when enabled, the roles granted to every group the user
belongs to directly or through the group's parent chain.

The group walk and the role-name computation are plain functions over
dictionaries so they can be exercised without storage.
"""

from typing import Callable, Dict, Iterable, Mapping, Optional, Set

from .config import get_config
from .identity import Group, IdentityStore, Permission, Role, User


def expand_group_ancestry(group_ids: Iterable[str],
                          parent_of: Callable[[str], Optional[str]]) -> Set[str]:
    """
    Return the given groups plus all of their ancestors.

    ``parent_of`` maps a group id to its parent id, or None at a root (or for
    a group that should not pass membership upwards). The visited set makes
    the walk terminate on cyclic parent chains.
    """
    visited: Set[str] = set()
    stack = list(group_ids)
    while stack:
        group_id = stack.pop()
        if group_id in visited:
            continue
        visited.add(group_id)
        parent_id = parent_of(group_id)
        if parent_id and parent_id not in visited:
            stack.append(parent_id)
    return visited


def _effective_role_ids(user: Optional[User], groups_by_id: Mapping[str, Group],
                        include_groups: bool) -> Set[str]:
    if user is None or not user.is_available:
        return set()

    role_ids = set(user.roles)
    if include_groups:
        def parent_of(group_id: str) -> Optional[str]:
            group = groups_by_id.get(group_id)
            if group is None or not group.is_active:
                return None
            return group.parent_group_id

        for group_id in expand_group_ancestry(user.group_ids, parent_of):
            group = groups_by_id.get(group_id)
            # An inactive group grants nothing and does not pass on its ancestors
            if group is not None and group.is_active:
                role_ids.update(group.role_ids)
    return role_ids


def _effective_roles(user: Optional[User], roles_by_id: Mapping[str, Role],
                     groups_by_id: Mapping[str, Group], include_groups: bool):
    for role_id in _effective_role_ids(user, groups_by_id, include_groups):
        role = roles_by_id.get(role_id)
        if role is not None and role.is_active:
            yield role


def effective_role_names(user: Optional[User], roles_by_id: Mapping[str, Role],
                         groups_by_id: Mapping[str, Group],
                         include_groups: bool = True) -> Set[str]:
    """Names of the active roles a user holds; empty for missing, inactive or locked users"""
    return {role.name for role in _effective_roles(user, roles_by_id, groups_by_id, include_groups)}


def effective_permissions(user: Optional[User], roles_by_id: Mapping[str, Role],
                          groups_by_id: Mapping[str, Group],
                          include_groups: bool = True) -> Set[Permission]:
    permissions: Set[Permission] = set()
    for role in _effective_roles(user, roles_by_id, groups_by_id, include_groups):
        permissions.update(Permission.parse(p) for p in role.permissions)
    return permissions


def permission_matches(granted: Set[Permission], required: Permission) -> bool:
    """Exact pair, 'resource:*', '*:action' or the super-admin '*'"""
    return bool(granted & {
        required,
        Permission(required.resource, "*"),
        Permission("*", required.action),
        Permission("*", "*"),
    })


class PermissionResolver:
    """Resolves effective roles and permissions from the identity store, fresh on every call"""

    def __init__(self, identity: IdentityStore, group_derived_roles: Optional[bool] = None):
        self.identity = identity
        if group_derived_roles is None:
            group_derived_roles = get_config().group_derived_roles
        self.group_derived_roles = group_derived_roles

    def _load(self, user_id: str):
        user = self.identity.get_user(user_id)
        if user is None or not user.is_available:
            return None, {}, {}

        groups_by_id: Dict[str, Group] = {}
        if self.group_derived_roles:
            def parent_of(group_id: str) -> Optional[str]:
                group = self.identity.get_group(group_id)
                if group is None:
                    return None
                groups_by_id[group_id] = group
                return group.parent_group_id if group.is_active else None

            expand_group_ancestry(user.group_ids, parent_of)

        role_ids = _effective_role_ids(user, groups_by_id, self.group_derived_roles)
        roles_by_id = {}
        for role_id in role_ids:
            role = self.identity.get_role(role_id)
            if role is not None:
                roles_by_id[role_id] = role
        return user, roles_by_id, groups_by_id

    def resolve_effective_role_names(self, user_id: str) -> Set[str]:
        user, roles_by_id, groups_by_id = self._load(user_id)
        return effective_role_names(user, roles_by_id, groups_by_id, self.group_derived_roles)

    def resolve_effective_permissions(self, user_id: str) -> Set[Permission]:
        user, roles_by_id, groups_by_id = self._load(user_id)
        return effective_permissions(user, roles_by_id, groups_by_id, self.group_derived_roles)

    def has_permission(self, user_id: str, permission: str) -> bool:
        """Check ``"resource:action"`` against the user's effective permissions"""
        return permission_matches(self.resolve_effective_permissions(user_id), Permission.parse(permission))
