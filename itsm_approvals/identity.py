"""
Identity & Role Store

Users, roles (named permission bundles) and groups (an optional parent tree),
plus the user<->role, user<->group and group<->role assignments.

Lookups return None or empty lists for missing records; administrative
mutations raise typed errors. Nothing is ever physically removed: users are
deactivated and roles or groups are marked inactive, because historical
approval and audit records keep referring to them.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .audit import AuditEventType, AuditTrail
from .errors import (
    ConcurrencyConflictError,
    GroupNotFoundError,
    InvalidStateError,
    RoleNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("itsm_approvals.identity")


@dataclass(frozen=True)
class Permission:
    """A (resource, action) pair; either side may be the wildcard '*'"""
    resource: str
    action: str

    @classmethod
    def parse(cls, value: str) -> 'Permission':
        if value == "*":
            return cls("*", "*")
        resource, sep, action = value.partition(":")
        if not sep or not resource or not action:
            raise ValidationError(
                f"Invalid permission '{value}', expected 'resource:action'",
                details={'permission': value}
            )
        return cls(resource, action)

    def __str__(self) -> str:
        if self.resource == "*" and self.action == "*":
            return "*"
        return f"{self.resource}:{self.action}"


class RecordStatus(Enum):
    """Soft-delete status for roles and groups"""
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class Role(StorageRecord):
    """Named bundle of permission strings"""
    name: str
    description: str = ""
    permissions: List[str] = field(default_factory=list)
    is_system_role: bool = False
    status: RecordStatus = RecordStatus.ACTIVE
    revision: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result


@dataclass
class Group(StorageRecord):
    """Group of users; roles granted to the group apply to its members"""
    name: str
    description: str = ""
    group_type: str = "custom"
    parent_group_id: Optional[str] = None
    role_ids: List[str] = field(default_factory=list)
    status: RecordStatus = RecordStatus.ACTIVE
    revision: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result


@dataclass
class User(StorageRecord):
    """System user with role and group assignments"""
    username: str
    email: str
    full_name: str
    roles: List[str] = field(default_factory=list)  # role IDs
    group_ids: List[str] = field(default_factory=list)
    is_active: bool = True
    is_locked: bool = False
    created_by: str = ""
    revision: int = 0

    @property
    def is_available(self) -> bool:
        """Active and not locked out"""
        return self.is_active and not self.is_locked

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


def _dates(data: Dict[str, Any]) -> Dict[str, Any]:
    data['created_at'] = datetime.fromisoformat(data['created_at'])
    data['updated_at'] = datetime.fromisoformat(data['updated_at'])
    return data


def role_from_dict(data: Dict[str, Any]) -> Role:
    data = _dates(dict(data))
    data['status'] = RecordStatus(data.get('status', 'active'))
    return Role(**data)


def group_from_dict(data: Dict[str, Any]) -> Group:
    data = _dates(dict(data))
    data['status'] = RecordStatus(data.get('status', 'active'))
    return Group(**data)


def user_from_dict(data: Dict[str, Any]) -> User:
    return User(**_dates(dict(data)))


Record = TypeVar("Record", Role, Group, User)


# name -> (description, permissions)
SYSTEM_ROLES = {
    'admin': ("Full system access", ["*"]),
    'approval_manager': ("Manage workflows and approvals", ["approvals:*"]),
    'approver': ("Act on approval steps", ["approvals:read", "approvals:act"]),
    'auditor': ("Read-only access to approvals and audit", ["approvals:read", "audit:read"]),
    'requester': ("Raise approval requests", ["approvals:read", "approvals:request"]),
}


class IdentityStore:
    """Users, roles and groups backed by a StorageInterface"""

    USERS = 'users'
    ROLES = 'roles'
    GROUPS = 'groups'

    # Read-modify-write attempts before a ConcurrencyConflictError
    UPDATE_ATTEMPTS = 5

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit
        self._create_system_roles()

    def _log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                   metadata: Dict[str, Any], actor_id: str) -> None:
        if self.audit:
            self.audit.log_event(event_type, entity_type, entity_id, metadata, actor_id)

    def _create_system_roles(self) -> None:
        now = datetime.now(timezone.utc)
        for name, (description, permissions) in SYSTEM_ROLES.items():
            role = Role(
                id=f"system-{name}",
                created_at=now,
                updated_at=now,
                name=name,
                description=description,
                permissions=list(permissions),
                is_system_role=True
            )
            # Insert-if-absent so several processes can seed the same database
            self.storage.insert(self.ROLES, role.id, role.to_dict())

    # Lookups

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.USERS, user_id)
        return user_from_dict(data) if data else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        found = self.storage.find(self.USERS, {'username': username})
        return user_from_dict(found[0]) if found else None

    def get_role(self, role_id: str) -> Optional[Role]:
        data = self.storage.load(self.ROLES, role_id)
        return role_from_dict(data) if data else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        found = self.storage.find(self.ROLES, {'name': name})
        return role_from_dict(found[0]) if found else None

    def get_group(self, group_id: str) -> Optional[Group]:
        data = self.storage.load(self.GROUPS, group_id)
        return group_from_dict(data) if data else None

    def get_roles_for_user(self, user_id: str) -> List[Role]:
        """Roles assigned directly to the user (missing role ids are skipped)"""
        user = self.get_user(user_id)
        if not user:
            return []
        return [role for role in (self.get_role(rid) for rid in user.roles) if role]

    def get_groups_for_user(self, user_id: str) -> List[Group]:
        """Groups the user is a direct member of"""
        user = self.get_user(user_id)
        if not user:
            return []
        return [group for group in (self.get_group(gid) for gid in user.group_ids) if group]

    def list_users(self, role_id: Optional[str] = None, group_id: Optional[str] = None,
                   is_active: Optional[bool] = None) -> List[User]:
        users = []
        for data in self.storage.load_all(self.USERS):
            user = user_from_dict(data)
            if role_id and role_id not in user.roles:
                continue
            if group_id and group_id not in user.group_ids:
                continue
            if is_active is not None and user.is_active != is_active:
                continue
            users.append(user)
        return sorted(users, key=lambda u: u.username)

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        roles = [role_from_dict(d) for d in self.storage.load_all(self.ROLES)]
        if not include_inactive:
            roles = [r for r in roles if r.is_active]
        return sorted(roles, key=lambda r: r.name)

    def list_groups(self, include_inactive: bool = False) -> List[Group]:
        groups = [group_from_dict(d) for d in self.storage.load_all(self.GROUPS)]
        if not include_inactive:
            groups = [g for g in groups if g.is_active]
        return sorted(groups, key=lambda g: g.name)

    def get_group_members(self, group_id: str) -> List[User]:
        return self.list_users(group_id=group_id)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Load users, roles and groups in one pass, keyed by id"""
        return {
            'users': {d['id']: user_from_dict(d) for d in self.storage.load_all(self.USERS)},
            'roles': {d['id']: role_from_dict(d) for d in self.storage.load_all(self.ROLES)},
            'groups': {d['id']: group_from_dict(d) for d in self.storage.load_all(self.GROUPS)},
        }

    # Helpers for mutations

    def _require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found", details={'user_id': user_id})
        return user

    def _require_role(self, role_id: str) -> Role:
        role = self.get_role(role_id)
        if not role:
            raise RoleNotFoundError(f"Role {role_id} not found", details={'role_id': role_id})
        return role

    def _require_group(self, group_id: str) -> Group:
        group = self.get_group(group_id)
        if not group:
            raise GroupNotFoundError(f"Group {group_id} not found", details={'group_id': group_id})
        return group

    def _update(self, table: str, record_id: str,
                load: Callable[[str], Record], change: Callable[[Record], bool]) -> Tuple[Record, bool]:
        """
        Read-modify-write guarded by compare_and_swap on ``revision``.

        ``change`` edits the freshly loaded record and returns whether there
        is anything to write. When another writer got in first the record is
        re-read and the change applied again, so concurrent assignments
        never overwrite each other.
        """
        for attempt in range(1, self.UPDATE_ATTEMPTS + 1):
            record = load(record_id)
            if not change(record):
                return record, False
            expected = {'revision': record.revision}
            record.revision += 1
            record.updated_at = datetime.now(timezone.utc)
            if self.storage.compare_and_swap(table, record_id, expected, record.to_dict()):
                return record, True
            logger.debug(f"Concurrent update of {table}/{record_id}, retrying ({attempt}/{self.UPDATE_ATTEMPTS})")

        raise ConcurrencyConflictError(
            f"Could not update {record_id}: it keeps changing concurrently",
            details={'table': table, 'record_id': record_id, 'attempts': self.UPDATE_ATTEMPTS}
        )

    def _update_user(self, user_id: str, change: Callable[[User], bool]) -> Tuple[User, bool]:
        return self._update(self.USERS, user_id, self._require_user, change)

    def _update_role(self, role_id: str, change: Callable[[Role], bool]) -> Tuple[Role, bool]:
        return self._update(self.ROLES, role_id, self._require_role, change)

    def _update_group(self, group_id: str, change: Callable[[Group], bool]) -> Tuple[Group, bool]:
        return self._update(self.GROUPS, group_id, self._require_group, change)

    @staticmethod
    def _validate_permissions(permissions: List[str]) -> List[str]:
        # parse() raises ValidationError on malformed strings
        return [str(Permission.parse(p)) for p in permissions]

    @staticmethod
    def _refuse_system_role(role: Role, verb: str) -> None:
        if role.is_system_role:
            raise InvalidStateError(
                f"System role '{role.name}' cannot be {verb}",
                details={'role_id': role.id}, error_code="SYSTEM_ROLE_IMMUTABLE"
            )

    # Role management

    def create_role(self, name: str, permissions: List[str], description: str = "",
                    created_by: str = "system") -> Role:
        if not name:
            raise ValidationError("Role name is required")
        if self.get_role_by_name(name):
            raise ValidationError(f"Role name '{name}' already exists", details={'name': name})

        now = datetime.now(timezone.utc)
        role = Role(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            description=description,
            permissions=self._validate_permissions(permissions)
        )
        self.storage.insert(self.ROLES, role.id, role.to_dict())

        self._log_event(AuditEventType.ROLE_CREATED, 'role', role.id,
                        {'name': name, 'permissions': role.permissions}, created_by)
        log_action(logger, "info", f"Role {name} created", actor_id=created_by,
                   action="create_role", resource=role.id)
        return role

    def update_role(self, role_id: str, permissions: Optional[List[str]] = None,
                    description: Optional[str] = None, updated_by: str = "system") -> Role:
        validated = self._validate_permissions(permissions) if permissions is not None else None

        def change(role: Role) -> bool:
            self._refuse_system_role(role, "modified")
            if validated is not None:
                role.permissions = validated
            if description is not None:
                role.description = description
            return True

        role, _ = self._update_role(role_id, change)
        self._log_event(AuditEventType.ROLE_UPDATED, 'role', role_id,
                        {'permissions': role.permissions}, updated_by)
        return role

    def delete_role(self, role_id: str, deleted_by: str = "system") -> Role:
        """Soft delete: the role stops granting anything but stays referenceable"""
        def change(role: Role) -> bool:
            self._refuse_system_role(role, "deleted")
            role.status = RecordStatus.INACTIVE
            return True

        role, _ = self._update_role(role_id, change)
        self._log_event(AuditEventType.ROLE_DELETED, 'role', role_id, {'name': role.name}, deleted_by)
        log_action(logger, "info", f"Role {role.name} deactivated", actor_id=deleted_by,
                   action="delete_role", resource=role_id)
        return role

    # User management

    def create_user(self, username: str, email: str, full_name: str,
                    roles: Optional[List[str]] = None, group_ids: Optional[List[str]] = None,
                    created_by: str = "system", user_id: Optional[str] = None) -> User:
        if not username:
            raise ValidationError("Username is required")
        if self.get_user_by_username(username):
            raise ValidationError(f"Username '{username}' already exists", details={'username': username})
        for role_id in roles or []:
            self._require_role(role_id)
        for group_id in group_ids or []:
            self._require_group(group_id)

        now = datetime.now(timezone.utc)
        user = User(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            email=email,
            full_name=full_name,
            roles=list(dict.fromkeys(roles or [])),
            group_ids=list(dict.fromkeys(group_ids or [])),
            created_by=created_by
        )
        if not self.storage.insert(self.USERS, user.id, user.to_dict()):
            raise ValidationError(f"User id '{user.id}' already exists", details={'user_id': user.id})

        self._log_event(AuditEventType.USER_CREATED, 'user', user.id,
                        {'username': username, 'roles': user.roles, 'group_ids': user.group_ids}, created_by)
        log_action(logger, "info", f"User {username} created", actor_id=created_by,
                   action="create_user", resource=user.id)
        return user

    def ensure_admin(self, user_id: str) -> User:
        """Make sure ``user_id`` exists and holds the admin role, so a fresh install can be administered"""
        if not self.get_user(user_id):
            self.create_user(username=user_id, email="", full_name=user_id,
                             roles=["system-admin"], user_id=user_id)
        return self.assign_role(user_id, "system-admin")

    def update_user(self, user_id: str, email: Optional[str] = None,
                    full_name: Optional[str] = None, updated_by: str = "system") -> User:
        def change(user: User) -> bool:
            if email is not None:
                user.email = email
            if full_name is not None:
                user.full_name = full_name
            return True

        user, _ = self._update_user(user_id, change)
        self._log_event(AuditEventType.USER_UPDATED, 'user', user_id,
                        {'email': user.email, 'full_name': user.full_name}, updated_by)
        return user

    def _set_flags(self, user_id: str, event_type: AuditEventType, metadata: Dict[str, Any],
                   actor_id: str, **flags: bool) -> User:
        def change(user: User) -> bool:
            for name, value in flags.items():
                setattr(user, name, value)
            return True

        user, _ = self._update_user(user_id, change)
        self._log_event(event_type, 'user', user_id, metadata, actor_id)
        return user

    def deactivate_user(self, user_id: str, updated_by: str = "system") -> User:
        return self._set_flags(user_id, AuditEventType.USER_DEACTIVATED, {}, updated_by, is_active=False)

    def activate_user(self, user_id: str, updated_by: str = "system") -> User:
        return self._set_flags(user_id, AuditEventType.USER_UPDATED, {'is_active': True}, updated_by,
                               is_active=True, is_locked=False)

    def lock_user(self, user_id: str, updated_by: str = "system") -> User:
        return self._set_flags(user_id, AuditEventType.USER_LOCKED, {}, updated_by, is_locked=True)

    def unlock_user(self, user_id: str, updated_by: str = "system") -> User:
        return self._set_flags(user_id, AuditEventType.USER_UNLOCKED, {}, updated_by, is_locked=False)

    def assign_role(self, user_id: str, role_id: str, assigned_by: str = "system") -> User:
        self._require_role(role_id)
        user, changed = self._update_user(user_id, lambda u: _add(u.roles, role_id))
        if changed:
            self._log_event(AuditEventType.ROLE_ASSIGNED, 'user', user_id, {'role_id': role_id}, assigned_by)
        return user

    def remove_role(self, user_id: str, role_id: str, removed_by: str = "system") -> User:
        user, changed = self._update_user(user_id, lambda u: _discard(u.roles, role_id))
        if changed:
            self._log_event(AuditEventType.ROLE_REMOVED, 'user', user_id, {'role_id': role_id}, removed_by)
        return user

    # Group management

    def create_group(self, name: str, description: str = "", group_type: str = "custom",
                     parent_group_id: Optional[str] = None, role_ids: Optional[List[str]] = None,
                     created_by: str = "system") -> Group:
        if not name:
            raise ValidationError("Group name is required")
        if parent_group_id:
            self._require_group(parent_group_id)
        for role_id in role_ids or []:
            self._require_role(role_id)

        now = datetime.now(timezone.utc)
        group = Group(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            description=description,
            group_type=group_type,
            parent_group_id=parent_group_id,
            role_ids=list(dict.fromkeys(role_ids or []))
        )
        self.storage.insert(self.GROUPS, group.id, group.to_dict())
        self._log_event(AuditEventType.GROUP_CREATED, 'group', group.id,
                        {'name': name, 'parent_group_id': parent_group_id}, created_by)
        return group

    def update_group(self, group_id: str, name: Optional[str] = None,
                     description: Optional[str] = None, parent_group_id: Optional[str] = None,
                     is_active: Optional[bool] = None, updated_by: str = "system") -> Group:
        """Cycles through parent_group_id are not rejected here; resolvers guard against them"""
        if parent_group_id:
            self._require_group(parent_group_id)

        def change(group: Group) -> bool:
            if name is not None:
                group.name = name
            if description is not None:
                group.description = description
            if parent_group_id is not None:
                group.parent_group_id = parent_group_id or None
            if is_active is not None:
                group.status = RecordStatus.ACTIVE if is_active else RecordStatus.INACTIVE
            return True

        group, _ = self._update_group(group_id, change)
        self._log_event(AuditEventType.GROUP_UPDATED, 'group', group_id, group.to_dict(), updated_by)
        return group

    def add_user_to_group(self, user_id: str, group_id: str, added_by: str = "system") -> User:
        self._require_group(group_id)
        user, changed = self._update_user(user_id, lambda u: _add(u.group_ids, group_id))
        if changed:
            self._log_event(AuditEventType.GROUP_MEMBERSHIP_CHANGED, 'group', group_id,
                            {'user_id': user_id, 'change': 'added'}, added_by)
        return user

    def remove_user_from_group(self, user_id: str, group_id: str, removed_by: str = "system") -> User:
        user, changed = self._update_user(user_id, lambda u: _discard(u.group_ids, group_id))
        if changed:
            self._log_event(AuditEventType.GROUP_MEMBERSHIP_CHANGED, 'group', group_id,
                            {'user_id': user_id, 'change': 'removed'}, removed_by)
        return user

    def assign_role_to_group(self, group_id: str, role_id: str, assigned_by: str = "system") -> Group:
        self._require_role(role_id)
        group, changed = self._update_group(group_id, lambda g: _add(g.role_ids, role_id))
        if changed:
            self._log_event(AuditEventType.ROLE_ASSIGNED, 'group', group_id, {'role_id': role_id}, assigned_by)
        return group

    def remove_role_from_group(self, group_id: str, role_id: str, removed_by: str = "system") -> Group:
        group, changed = self._update_group(group_id, lambda g: _discard(g.role_ids, role_id))
        if changed:
            self._log_event(AuditEventType.ROLE_REMOVED, 'group', group_id, {'role_id': role_id}, removed_by)
        return group


def _add(items: List[str], value: str) -> bool:
    if value in items:
        return False
    items.append(value)
    return True


def _discard(items: List[str], value: str) -> bool:
    if value not in items:
        return False
    items.remove(value)
    return True
