"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..engine import Decision


# Workflow schemas
class WorkflowStepModel(BaseModel):
    order: int = Field(..., ge=1, description="1-based position in the workflow")
    name: str = ""
    approver_users: List[str] = Field(default_factory=list, description="Explicit approver user ids")
    approver_roles: List[str] = Field(default_factory=list, description="Role names whose holders may approve")
    escalation_timeout_hours: Optional[float] = Field(None, gt=0)

    def to_step_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class CreateWorkflowRequest(BaseModel):
    actor_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    steps: List[WorkflowStepModel]
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True


class UpdateWorkflowRequest(BaseModel):
    actor_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[WorkflowStepModel]] = None
    trigger_conditions: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


# Instance schemas
class StartApprovalRequest(BaseModel):
    actor_id: str = Field(..., description="Requesting user")
    workflow_id: str
    record_id: str
    record_table: str


class ActionRequest(BaseModel):
    actor_id: str
    step_order: int = Field(..., ge=1)
    decision: Decision
    comment: Optional[str] = None


class CancelRequest(BaseModel):
    actor_id: str
    reason: str = ""


class DelegateRequest(BaseModel):
    actor_id: str = Field(..., description="Eligible approver handing the step off")
    step_order: int = Field(..., ge=1)
    to_user_id: str
    reason: str = ""


class EscalateRequest(BaseModel):
    actor_id: str
    step_order: int = Field(..., ge=1)
    reason: str = ""


# RBAC schemas
class CreateRoleRequest(BaseModel):
    actor_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    permissions: List[str] = Field(default_factory=list, description="'resource:action' strings")


class UpdateRoleRequest(BaseModel):
    actor_id: str
    description: Optional[str] = None
    permissions: Optional[List[str]] = None


class CreateUserRequest(BaseModel):
    actor_id: str
    id: Optional[str] = None
    username: str = Field(..., min_length=1)
    email: str
    full_name: str
    roles: List[str] = Field(default_factory=list, description="Role ids")
    group_ids: List[str] = Field(default_factory=list)


class UpdateUserRequest(BaseModel):
    actor_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_active: Optional[bool] = None
    is_locked: Optional[bool] = None


class CreateGroupRequest(BaseModel):
    actor_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    group_type: str = "custom"
    parent_group_id: Optional[str] = None
    role_ids: List[str] = Field(default_factory=list)


class AssignRoleRequest(BaseModel):
    actor_id: str
    role_id: str


class GroupMembershipRequest(BaseModel):
    actor_id: str
    group_id: str
