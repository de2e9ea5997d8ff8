"""FastAPI routes.

The caller is identified by the ``X-User-Id`` header; authentication happens
upstream. Domain errors map to status codes in ``install_exception_handlers``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from concierge.automation.templates import list_templates
from concierge.core.errors import (
    InvalidTokenError,
    NotFoundError,
    SchedulingExhausted,
    ValidationError,
)
from concierge.runtime import Runtime, get_runtime
from concierge.scheduling.smart_scheduler import ScheduleRequest
from concierge.workflows.engine import UnknownWorkflowError

router = APIRouter()


def current_user(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def runtime() -> Runtime:
    return get_runtime()


# ── Request bodies ───────────────────────────────────────────────────────

class RuleCreate(BaseModel):
    name: str
    description: str = ""
    trigger: dict[str, Any]
    actions: list[dict[str, Any]]
    enabled: bool = True


class RuleToggle(BaseModel):
    enabled: bool


class RuleExecute(BaseModel):
    trigger_data: dict[str, Any] = Field(default_factory=dict)


class EmailTriggerCreate(BaseModel):
    patterns: list[str]
    rule_id: str
    enabled: bool = True


class EmailIn(BaseModel):
    sender: str = Field(default="", alias="from")
    subject: str = ""
    body: str = ""


class ScheduleIn(BaseModel):
    title: str
    duration: int = Field(gt=0)
    type: str = ""
    description: str = ""
    location: str = ""
    attendees: list[str] = Field(default_factory=list)
    not_before: datetime | None = None


class ApprovalIn(BaseModel):
    token: str
    approved: bool
    reason: str | None = None


class WorkflowRun(BaseModel):
    trigger_data: dict[str, Any] = Field(default_factory=dict)


# ── Rules ────────────────────────────────────────────────────────────────

@router.get("/rules")
async def list_rules(user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    rules = await rt.automation.get_user_rules(user_id)
    return {"rules": [r.to_dict() for r in rules]}


@router.post("/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: RuleCreate, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    rule_id = await rt.automation.add_rule({**body.model_dump(), "user_id": user_id})
    return {"rule_id": rule_id}


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    rule = await rt.automation.get_rule(rule_id, user_id)
    if rule is None:
        raise NotFoundError("rule", rule_id)
    return rule.to_dict()


@router.patch("/rules/{rule_id}")
async def toggle_rule(
    rule_id: str, body: RuleToggle, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    if not await rt.automation.toggle_rule(rule_id, body.enabled, user_id):
        raise NotFoundError("rule", rule_id)
    return {"rule_id": rule_id, "enabled": body.enabled}


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> None:
    if not await rt.automation.delete_rule(rule_id, user_id):
        raise NotFoundError("rule", rule_id)


@router.post("/rules/{rule_id}/execute")
async def execute_rule(
    rule_id: str, body: RuleExecute, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    success = await rt.automation.execute_rule(rule_id, user_id, body.trigger_data)
    return {"rule_id": rule_id, "success": success}


@router.get("/rules/{rule_id}/logs")
async def rule_logs(
    rule_id: str,
    limit: int | None = Query(default=None),
    user_id: str = Depends(current_user),
    rt: Runtime = Depends(runtime),
) -> dict:
    if await rt.automation.get_rule(rule_id, user_id) is None:
        raise NotFoundError("rule", rule_id)
    logs = await rt.automation.get_rule_execution_logs(rule_id, limit)
    return {"logs": [entry.to_dict() for entry in logs]}


@router.get("/logs")
async def user_logs(
    limit: int | None = Query(default=None),
    user_id: str = Depends(current_user),
    rt: Runtime = Depends(runtime),
) -> dict:
    logs = await rt.automation.get_user_execution_logs(user_id, limit)
    return {"logs": [entry.to_dict() for entry in logs]}


# ── Templates ────────────────────────────────────────────────────────────

@router.get("/templates")
async def templates() -> dict:
    return {"templates": list_templates()}


@router.post("/templates/{template_id}/rules", status_code=status.HTTP_201_CREATED)
async def create_rule_from_template(
    template_id: str,
    customizations: dict[str, Any] | None = None,
    user_id: str = Depends(current_user),
    rt: Runtime = Depends(runtime),
) -> dict:
    rule_id = await rt.automation.create_rule_from_template(user_id, template_id, customizations)
    if rule_id is None:
        raise NotFoundError("template", template_id)
    return {"rule_id": rule_id}


# ── Email triggers ───────────────────────────────────────────────────────

@router.get("/triggers/email")
async def list_email_triggers(user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    triggers = await rt.triggers.get_user_triggers(user_id)
    return {"triggers": [t.to_dict() for t in triggers]}


@router.post("/triggers/email", status_code=status.HTTP_201_CREATED)
async def create_email_trigger(
    body: EmailTriggerCreate, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    trigger_id = await rt.triggers.add_trigger({**body.model_dump(), "user_id": user_id})
    return {"trigger_id": trigger_id}


@router.delete("/triggers/email/{trigger_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_email_trigger(
    trigger_id: str, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> None:
    if not await rt.triggers.delete_trigger(trigger_id, user_id):
        raise NotFoundError("trigger", trigger_id)


@router.post("/emails/inbound")
async def process_email(body: EmailIn, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    fires = await rt.triggers.process_email({
        "user_id": user_id, "from": body.sender, "subject": body.subject, "body": body.body,
    })
    return {"fired": [f.to_dict() for f in fires]}


# ── Smart scheduling ─────────────────────────────────────────────────────

@router.post("/schedule", status_code=status.HTTP_201_CREATED)
async def smart_schedule(
    body: ScheduleIn, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    event = await rt.scheduler.auto_schedule_event(user_id, ScheduleRequest(
        title=body.title,
        duration=body.duration,
        type=body.type,
        description=body.description,
        location=body.location,
        attendees=tuple(body.attendees),
        not_before=body.not_before,
    ))
    if event is None:
        raise SchedulingExhausted()
    return {"event": event.to_dict()}


# ── Workflows ────────────────────────────────────────────────────────────

@router.get("/workflows/executions")
async def list_executions(user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    executions = await rt.workflows.get_all_executions(user_id)
    return {"executions": [e.to_dict() for e in executions]}


@router.get("/workflows/executions/{execution_id}")
async def get_execution(
    execution_id: str, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    execution = await rt.workflows.get_execution(execution_id, user_id)
    if execution is None:
        raise NotFoundError("execution", execution_id)
    return execution.to_dict()


@router.get("/workflows/approvals")
async def pending_approvals(user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    # The owner sees their own tokens; they are what the approve call takes.
    pending = await rt.workflows.get_pending_approvals(user_id)
    return {"executions": [e.to_dict(include_token=True) for e in pending]}


@router.post("/workflows/approvals")
async def approve_workflow(
    body: ApprovalIn, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    result = await rt.workflows.approve_workflow(body.token, body.approved, body.reason)
    return result.to_dict()


@router.post("/workflows/{workflow_id}/execute", status_code=status.HTTP_201_CREATED)
async def run_workflow(
    workflow_id: str, body: WorkflowRun, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    try:
        execution = await rt.workflows.execute_workflow(workflow_id, user_id, body.trigger_data)
    except UnknownWorkflowError:
        raise NotFoundError("workflow", workflow_id) from None
    return execution.to_dict()


# ── Monitors ─────────────────────────────────────────────────────────────

@router.get("/monitors")
async def list_monitors(user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> dict:
    return {"monitors": [m.to_dict() for m in rt.monitors.get_user_monitors(user_id)]}


@router.post("/monitors/email", status_code=status.HTTP_201_CREATED)
async def start_email_monitor(
    config: dict[str, Any] | None = None, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    return {"monitor_id": await rt.monitors.start_email_monitoring(user_id, config)}


@router.post("/monitors/voicemail", status_code=status.HTTP_201_CREATED)
async def start_voicemail_monitor(
    config: dict[str, Any] | None = None, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime),
) -> dict:
    return {"monitor_id": await rt.monitors.start_voicemail_monitoring(user_id, config)}


@router.delete("/monitors/{monitor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def stop_monitor(monitor_id: str, user_id: str = Depends(current_user), rt: Runtime = Depends(runtime)) -> None:
    await rt.monitors.stop_monitoring(monitor_id, user_id)


# ── Error mapping ────────────────────────────────────────────────────────

def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "validation_error", "problems": exc.problems})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})

    @app.exception_handler(InvalidTokenError)
    async def _invalid_token(request: Request, exc: InvalidTokenError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "invalid_token", "detail": str(exc)})

    @app.exception_handler(SchedulingExhausted)
    async def _no_slot(request: Request, exc: SchedulingExhausted) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "no_slot_available", "detail": str(exc)})
