"""
Approval workflow and instance endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import ApprovalSystem, get_approval_system, require_permission
from .schemas import (
    ActionRequest,
    CancelRequest,
    CreateWorkflowRequest,
    DelegateRequest,
    EscalateRequest,
    StartApprovalRequest,
    UpdateWorkflowRequest,
)
from ..engine import InstanceStatus
from ..errors import WorkflowNotFoundError


router = APIRouter()


# Workflow definitions

@router.post("/workflows", status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(require_permission("approvals:write"))])
def create_workflow(
    request: CreateWorkflowRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create a workflow definition (version 1)"""
    workflow = system.workflows.create_workflow(
        name=request.name,
        description=request.description,
        steps=[step.to_step_dict() for step in request.steps],
        trigger_conditions=request.trigger_conditions,
        priority=request.priority,
        is_active=request.is_active,
        created_by=request.actor_id
    )
    return workflow.to_dict()


@router.put("/workflows/{workflow_id}",
            dependencies=[Depends(require_permission("approvals:write"))])
def update_workflow(
    workflow_id: str,
    request: UpdateWorkflowRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Edit a workflow; running instances stay on their version"""
    workflow = system.workflows.update_workflow(
        workflow_id,
        updated_by=request.actor_id,
        name=request.name,
        description=request.description,
        steps=[step.to_step_dict() for step in request.steps] if request.steps is not None else None,
        trigger_conditions=request.trigger_conditions,
        priority=request.priority,
        is_active=request.is_active
    )
    return workflow.to_dict()


@router.get("/workflows")
def list_workflows(
    include_inactive: bool = False,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Active workflows by priority, then name"""
    workflows = system.workflows.list_workflows(include_inactive=include_inactive)
    return {"workflows": [w.to_dict() for w in workflows], "count": len(workflows)}


@router.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(None, ge=1),
    system: ApprovalSystem = Depends(get_approval_system)
):
    workflow = system.workflows.get_workflow(workflow_id, version)
    if not workflow:
        raise WorkflowNotFoundError(f"Workflow {workflow_id} not found",
                                    details={'workflow_id': workflow_id, 'version': version})
    return workflow.to_dict()


# Instances

@router.post("/instances", status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(require_permission("approvals:request"))])
def start_approval(
    request: StartApprovalRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Start an approval against the workflow's current version"""
    instance_id = system.engine.start_approval(
        workflow_id=request.workflow_id,
        record_id=request.record_id,
        record_table=request.record_table,
        requested_by=request.actor_id
    )
    return system.engine.get_instance(instance_id).to_dict()


@router.get("/instances")
def list_instances(
    status: Optional[InstanceStatus] = None,
    workflow_id: Optional[str] = None,
    record_id: Optional[str] = None,
    record_table: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    system: ApprovalSystem = Depends(get_approval_system)
):
    instances = system.engine.list_instances(
        status=status, workflow_id=workflow_id, record_id=record_id,
        record_table=record_table, limit=limit, offset=offset
    )
    return {"instances": [i.to_dict() for i in instances], "count": len(instances)}


@router.get("/instances/{instance_id}")
def get_instance(
    instance_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.engine.get_instance(instance_id).to_dict()


@router.post("/instances/{instance_id}/action")
def act_on_step(
    instance_id: str,
    request: ActionRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Approve or reject the open step"""
    view = system.engine.act(
        instance_id, request.step_order, request.actor_id, request.decision, request.comment
    )
    return view.to_dict()


@router.post("/instances/{instance_id}/cancel")
def cancel_approval(
    instance_id: str,
    request: CancelRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.engine.cancel_approval(instance_id, request.actor_id, request.reason).to_dict()


@router.post("/instances/{instance_id}/delegate")
def delegate_step(
    instance_id: str,
    request: DelegateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    view = system.escalation.delegate(
        instance_id, request.step_order, request.actor_id, request.to_user_id, request.reason
    )
    return view.to_dict()


@router.post("/instances/{instance_id}/escalate",
             dependencies=[Depends(require_permission("approvals:write"))])
def escalate_step(
    instance_id: str,
    request: EscalateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    view = system.escalation.escalate(instance_id, request.step_order, request.reason, request.actor_id)
    return view.to_dict()


@router.get("/pending/{user_id}")
def list_pending_for(
    user_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Instances whose open step the user can act on now"""
    views = system.engine.list_pending_for(user_id)
    return {"instances": [v.to_dict() for v in views], "count": len(views)}


@router.get("/analytics/dashboard")
def get_analytics(
    days: Optional[int] = Query(None, ge=1, le=365),
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.engine.get_analytics(days)
