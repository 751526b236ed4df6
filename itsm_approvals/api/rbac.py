"""
RBAC (Role-Based Access Control) endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import ApprovalSystem, get_approval_system, require_permission
from .schemas import (
    AssignRoleRequest,
    CreateGroupRequest,
    CreateRoleRequest,
    CreateUserRequest,
    GroupMembershipRequest,
    UpdateRoleRequest,
    UpdateUserRequest,
)
from ..errors import UserNotFoundError


router = APIRouter()

# Guard for every identity mutation
rbac_write = [Depends(require_permission("rbac:write"))]


# Roles

@router.get("/roles")
def list_roles(
    include_inactive: bool = False,
    system: ApprovalSystem = Depends(get_approval_system)
):
    roles = system.identity.list_roles(include_inactive=include_inactive)
    return {"roles": [r.to_dict() for r in roles], "count": len(roles)}


@router.post("/roles", status_code=status.HTTP_201_CREATED, dependencies=rbac_write)
def create_role(
    request: CreateRoleRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    role = system.identity.create_role(
        name=request.name,
        permissions=request.permissions,
        description=request.description,
        created_by=request.actor_id
    )
    return role.to_dict()


@router.put("/roles/{role_id}", dependencies=rbac_write)
def update_role(
    role_id: str,
    request: UpdateRoleRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    role = system.identity.update_role(
        role_id, permissions=request.permissions, description=request.description,
        updated_by=request.actor_id
    )
    return role.to_dict()


@router.delete("/roles/{role_id}", dependencies=rbac_write)
def delete_role(
    role_id: str,
    actor_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Soft delete; the role is marked inactive"""
    return system.identity.delete_role(role_id, deleted_by=actor_id).to_dict()


# Users

@router.get("/users")
def list_users(
    is_active: Optional[bool] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    users = system.identity.list_users(is_active=is_active)
    return {"users": [u.to_dict() for u in users], "count": len(users)}


@router.post("/users", status_code=status.HTTP_201_CREATED, dependencies=rbac_write)
def create_user(
    request: CreateUserRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    user = system.identity.create_user(
        username=request.username,
        email=request.email,
        full_name=request.full_name,
        roles=request.roles,
        group_ids=request.group_ids,
        created_by=request.actor_id,
        user_id=request.id
    )
    return user.to_dict()


@router.get("/users/{user_id}")
def get_user(
    user_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    user = system.identity.get_user(user_id)
    if not user:
        raise UserNotFoundError(f"User {user_id} not found", details={'user_id': user_id})
    return user.to_dict()


@router.patch("/users/{user_id}", dependencies=rbac_write)
def update_user(
    user_id: str,
    request: UpdateUserRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    identity = system.identity
    user = identity.update_user(user_id, email=request.email, full_name=request.full_name,
                                updated_by=request.actor_id)
    if request.is_active is True:
        user = identity.activate_user(user_id, updated_by=request.actor_id)
    elif request.is_active is False:
        user = identity.deactivate_user(user_id, updated_by=request.actor_id)
    if request.is_locked is True:
        user = identity.lock_user(user_id, updated_by=request.actor_id)
    elif request.is_locked is False:
        user = identity.unlock_user(user_id, updated_by=request.actor_id)
    return user.to_dict()


@router.post("/users/{user_id}/roles", dependencies=rbac_write)
def assign_role(
    user_id: str,
    request: AssignRoleRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.assign_role(user_id, request.role_id, assigned_by=request.actor_id).to_dict()


@router.delete("/users/{user_id}/roles/{role_id}", dependencies=rbac_write)
def remove_role(
    user_id: str,
    role_id: str,
    actor_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.remove_role(user_id, role_id, removed_by=actor_id).to_dict()


@router.post("/users/{user_id}/groups", dependencies=rbac_write)
def add_user_to_group(
    user_id: str,
    request: GroupMembershipRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.add_user_to_group(user_id, request.group_id, added_by=request.actor_id).to_dict()


@router.delete("/users/{user_id}/groups/{group_id}", dependencies=rbac_write)
def remove_user_from_group(
    user_id: str,
    group_id: str,
    actor_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.remove_user_from_group(user_id, group_id, removed_by=actor_id).to_dict()


@router.get("/users/{user_id}/permissions")
def get_user_permissions(
    user_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Effective roles and permissions, including group-derived ones"""
    if not system.identity.get_user(user_id):
        raise UserNotFoundError(f"User {user_id} not found", details={'user_id': user_id})
    return {
        "user_id": user_id,
        "roles": sorted(system.permissions.resolve_effective_role_names(user_id)),
        "permissions": sorted(str(p) for p in system.permissions.resolve_effective_permissions(user_id)),
    }


# Groups

@router.get("/groups")
def list_groups(
    include_inactive: bool = False,
    system: ApprovalSystem = Depends(get_approval_system)
):
    groups = system.identity.list_groups(include_inactive=include_inactive)
    return {"groups": [g.to_dict() for g in groups], "count": len(groups)}


@router.post("/groups", status_code=status.HTTP_201_CREATED, dependencies=rbac_write)
def create_group(
    request: CreateGroupRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    group = system.identity.create_group(
        name=request.name,
        description=request.description,
        group_type=request.group_type,
        parent_group_id=request.parent_group_id,
        role_ids=request.role_ids,
        created_by=request.actor_id
    )
    return group.to_dict()


@router.get("/groups/{group_id}/members")
def get_group_members(
    group_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    members = system.identity.get_group_members(group_id)
    return {"members": [u.to_dict() for u in members], "count": len(members)}


@router.post("/groups/{group_id}/roles", dependencies=rbac_write)
def assign_role_to_group(
    group_id: str,
    request: AssignRoleRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.assign_role_to_group(group_id, request.role_id, assigned_by=request.actor_id).to_dict()


@router.delete("/groups/{group_id}/roles/{role_id}", dependencies=rbac_write)
def remove_role_from_group(
    group_id: str,
    role_id: str,
    actor_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.identity.remove_role_from_group(group_id, role_id, removed_by=actor_id).to_dict()
