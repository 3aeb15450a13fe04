"""Schedule management endpoints.

CRUD for workflow schedules, cron validation for live form feedback,
manual triggering and execution history. Every endpoint is scoped to
the caller's organization; schedules of other organizations are
reported as missing.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import logging

from api.schemas.common import MessageResponse, PaginationInfo, isoformat_utc
from api.schemas.schedule import (
    CronValidateRequest,
    ScheduleCreateRequest,
    ScheduleUpdateRequest,
)
from app.dependencies import ServiceContainer, get_container
from core.constants import Permission
from core.exceptions import NotFoundError
from core.rbac import require_permission
from core.security import TokenPayload
from db.models.execution import Execution
from db.models.schedule import Schedule
from scheduler import cron
from scheduler.engine import ScheduleInput

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_response(sched: Schedule, workflow_name: Optional[str] = None) -> dict:
    """Convert a Schedule ORM instance to a response dict."""
    return {
        "id": sched.id,
        "workflow_id": sched.workflow_id,
        "workflow_name": workflow_name,
        "organization_id": sched.organization_id,
        "cron_expression": sched.cron_expression,
        "timezone": sched.timezone,
        "enabled": sched.enabled,
        "payload": sched.payload,
        "start_at": isoformat_utc(sched.start_at),
        "end_at": isoformat_utc(sched.end_at),
        "last_run_at": isoformat_utc(sched.last_run_at),
        "next_run_at": isoformat_utc(sched.next_run_at),
        "retry_count": sched.retry_count,
        "last_error": sched.last_error,
        "created_at": isoformat_utc(sched.created_at),
        "updated_at": isoformat_utc(sched.updated_at),
    }


def _execution_to_response(execution: Execution, workflow_name: Optional[str] = None) -> dict:
    return {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "workflow_name": workflow_name,
        "schedule_id": execution.schedule_id,
        "trigger_type": execution.trigger_type,
        "status": execution.status,
        "started_at": isoformat_utc(execution.started_at),
        "completed_at": isoformat_utc(execution.completed_at),
        "created_at": isoformat_utc(execution.created_at),
        "error": execution.error,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_schedule(
    request: ScheduleCreateRequest,
    current_user: TokenPayload = Depends(require_permission(Permission.CREATE.value)),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Create a new schedule for a workflow of the caller's organization."""
    workflow = await container.workflows.find_workflow(request.workflow_id, current_user.org_id)
    if not workflow:
        raise NotFoundError("Workflow not found")

    schedule_id = await container.engine.register_schedule(
        ScheduleInput(
            organization_id=current_user.org_id,
            workflow_id=workflow.id,
            cron_expression=request.cron_expression,
            timezone=request.timezone,
            enabled=request.enabled,
            payload=request.payload,
            start_at=request.start_at,
            end_at=request.end_at,
        )
    )
    return {
        "success": True,
        "schedule_id": schedule_id,
        "message": "Schedule created successfully",
    }


@router.get("/")
async def list_schedules(
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    current_user: TokenPayload = Depends(require_permission(Permission.READ.value)),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """List the organization's schedules, soonest next run first."""
    schedules = await container.store.list_for_organization(current_user.org_id, workflow_id=workflow_id)
    names = await container.workflows.workflow_names(s.workflow_id for s in schedules)
    return {
        "success": True,
        "schedules": [_to_response(s, workflow_name=names.get(s.workflow_id)) for s in schedules],
    }


@router.get("/history")
async def get_schedule_history(
    schedule_id: Optional[str] = Query(None),
    workflow_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: TokenPayload = Depends(require_permission(Permission.READ.value)),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Paginated executions started by the scheduler, newest first."""
    executions, total = await container.executions.list_schedule_history(
        current_user.org_id,
        schedule_id=schedule_id,
        workflow_id=workflow_id,
        limit=limit,
        offset=offset,
    )
    names = await container.workflows.workflow_names(e.workflow_id for e in executions)
    return {
        "success": True,
        "executions": [_execution_to_response(e, names.get(e.workflow_id)) for e in executions],
        "pagination": PaginationInfo.build(total, limit, offset).model_dump(),
    }


@router.post("/validate")
async def validate_cron_expression(
    request: CronValidateRequest,
    current_user: TokenPayload = Depends(require_permission(Permission.READ.value)),
) -> dict:
    """Validate an expression and preview its next run; never persists."""
    result = cron.parse(request.cron_expression, request.timezone)
    return {
        "is_valid": result.is_valid,
        "description": result.description,
        "next_run": isoformat_utc(result.next_run),
        "error": result.error,
    }


@router.get("/{schedule_id}")
async def get_schedule(
    schedule_id: str,
    current_user: TokenPayload = Depends(require_permission(Permission.READ.value)),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Get schedule details."""
    schedule = await container.engine.get_schedule(schedule_id, current_user.org_id)
    names = await container.workflows.workflow_names([schedule.workflow_id])
    return {
        "success": True,
        "schedule": _to_response(schedule, workflow_name=names.get(schedule.workflow_id)),
    }


@router.put("/{schedule_id}", response_model=MessageResponse)
async def update_schedule(
    schedule_id: str,
    request: ScheduleUpdateRequest,
    current_user: TokenPayload = Depends(require_permission(Permission.UPDATE.value)),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    """Update a schedule; timing changes recompute its next run."""
    await container.engine.get_schedule(schedule_id, current_user.org_id)
    await container.engine.update_schedule(schedule_id, request.changes())
    return MessageResponse(message="Schedule updated successfully")


@router.delete("/{schedule_id}", response_model=MessageResponse)
async def delete_schedule(
    schedule_id: str,
    current_user: TokenPayload = Depends(require_permission(Permission.DELETE.value)),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    """Permanently delete a schedule."""
    await container.engine.get_schedule(schedule_id, current_user.org_id)
    await container.engine.delete_schedule(schedule_id)
    return MessageResponse(message="Schedule deleted successfully")


@router.post("/{schedule_id}/trigger")
async def trigger_schedule(
    schedule_id: str,
    current_user: TokenPayload = Depends(require_permission(Permission.EXECUTE.value)),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Run the schedule's workflow now without changing its cadence."""
    await container.engine.get_schedule(schedule_id, current_user.org_id)
    execution_id = await container.engine.trigger_manually(schedule_id, actor_id=current_user.sub)
    return {
        "success": True,
        "execution_id": execution_id,
        "message": "Schedule triggered successfully",
    }
