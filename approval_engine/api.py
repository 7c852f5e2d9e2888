"""
FastAPI REST API Module

REST surface of the approval workflow engine: template management, instance
actions, pending-approval queues, SLA sweeps and the principal directory.
Engine errors map to HTTP statuses in one exception handler. Runs on port 8091.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging
import uvicorn

from .errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
    WorkflowError, WorkflowStateError
)
from .system import ApprovalSystem
from .templates import ApplicableType, TemplateStatus, parse_enum
from .workflows import InstanceStatus, WorkflowInstance


logger = logging.getLogger("approval_engine.api")


# Pydantic models for API requests
class ApproverSpecModel(BaseModel):
    kind: str = Field("SPECIFIC_USERS", description="SPECIFIC_USERS, ROLE or DYNAMIC")
    users: List[str] = []
    role: Optional[str] = None
    dynamic_rule: Optional[str] = Field(None, description="Registered rule, e.g. entity_field:owner_id")


class AutoEscalationModel(BaseModel):
    enabled: bool = False
    escalate_to: List[str] = []
    after_hours: Optional[float] = None


class StepModel(BaseModel):
    order: int
    name: str
    description: str = ""
    approver_spec: ApproverSpecModel
    requires_all_approvers: bool = False
    allow_delegation: bool = True
    sla_hours: Optional[float] = None
    auto_escalate: AutoEscalationModel = Field(default_factory=AutoEscalationModel)
    allowed_actions: List[str] = []


class NotificationRuleModel(BaseModel):
    enabled: bool = False
    recipient_class: str = "ASSIGNEE"
    template_id: Optional[str] = None
    hours_before_sla: Optional[float] = None


class NotificationPolicyModel(BaseModel):
    on_submission: NotificationRuleModel = Field(default_factory=NotificationRuleModel)
    on_approval: NotificationRuleModel = Field(default_factory=NotificationRuleModel)
    on_rejection: NotificationRuleModel = Field(default_factory=NotificationRuleModel)
    before_sla: NotificationRuleModel = Field(default_factory=NotificationRuleModel)


class CreateTemplateRequest(BaseModel):
    name: str
    description: str = ""
    applicable_type: str = "CUSTOM"
    steps: List[StepModel] = []
    notifications: NotificationPolicyModel = Field(default_factory=NotificationPolicyModel)
    created_by: str = "system"


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    applicable_type: Optional[str] = None
    steps: Optional[List[StepModel]] = None
    notifications: Optional[NotificationPolicyModel] = None
    updated_by: str = "system"


class TemplateActionRequest(BaseModel):
    actor_id: str = "system"


class StartInstanceRequest(BaseModel):
    template_id: str
    entity_type: str
    entity_id: str
    initiated_by: str
    context: Dict[str, Any] = Field(default_factory=dict, description="Entity data for dynamic approver rules")


class ApproveRequest(BaseModel):
    actor_id: str
    comment: Optional[str] = None
    attachments: List[str] = []


class RejectRequest(BaseModel):
    actor_id: str
    reason: str


class DelegateRequest(BaseModel):
    actor_id: str
    delegate_id: str


class SkipRequest(BaseModel):
    actor_id: str
    reason: str


class CancelRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class RegisterPrincipalRequest(BaseModel):
    id: str
    display_name: str
    email: str = ""
    roles: List[str] = []


# Global approval system instance - created on first use
approval_system: Optional[ApprovalSystem] = None


def get_approval_system() -> ApprovalSystem:
    global approval_system
    if approval_system is None:
        approval_system = ApprovalSystem()
    return approval_system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the SLA sweeper with the server and stop it on shutdown"""
    system = get_approval_system()
    system.start()
    yield
    system.shutdown()


app = FastAPI(
    title="Approval Workflow Engine API",
    description="Multi-step, multi-actor approval workflows with SLA escalation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    WorkflowStateError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    if status_code >= 500:
        logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def instance_response(instance: WorkflowInstance, now: datetime) -> Dict[str, Any]:
    data = instance.to_dict()
    data['priority'] = instance.priority(now).value
    return data


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Template Management Endpoints
@app.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create a new DRAFT template"""
    spec = request.model_dump(exclude={'created_by'})
    template = system.templates.create(spec, created_by=request.created_by)
    return template.to_dict()


@app.get("/templates")
async def list_templates(
    status: Optional[str] = None,
    applicable_type: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """List templates filtered by status and applicable type"""
    templates = system.templates.list(
        status=parse_enum(TemplateStatus, status, 'status') if status else None,
        applicable_type=parse_enum(ApplicableType, applicable_type, 'applicable_type') if applicable_type else None
    )
    return {"templates": [t.to_dict() for t in templates]}


@app.get("/templates/{template_id}")
async def get_template(
    template_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.templates.get(template_id).to_dict()


@app.patch("/templates/{template_id}")
async def update_template(
    template_id: str,
    request: UpdateTemplateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Partially update a template; omitted fields are left unchanged"""
    patch = request.model_dump(exclude_unset=True, exclude={'updated_by'})
    template = system.templates.update(template_id, patch, updated_by=request.updated_by)
    return template.to_dict()


@app.post("/templates/{template_id}/activate")
async def activate_template(
    template_id: str,
    request: TemplateActionRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.templates.activate(template_id, request.actor_id).to_dict()


@app.post("/templates/{template_id}/deactivate")
async def deactivate_template(
    template_id: str,
    request: TemplateActionRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.templates.deactivate(template_id, request.actor_id).to_dict()


@app.post("/templates/{template_id}/archive")
async def archive_template(
    template_id: str,
    request: TemplateActionRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return system.templates.archive(template_id, request.actor_id).to_dict()


# Instance Endpoints
@app.post("/instances", status_code=status.HTTP_201_CREATED)
async def start_instance(
    request: StartInstanceRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Start an approval workflow for an entity"""
    instance = system.runtime.start_instance(
        request.template_id, request.entity_type, request.entity_id,
        request.initiated_by, context=request.context
    )
    return instance_response(instance, system.runtime.clock())


@app.get("/instances")
async def list_instances(
    status: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """List instances, or the history of one entity when entity_type and entity_id are given"""
    if entity_type and entity_id:
        instances = system.runtime.get_instances_for_entity(entity_type, entity_id)
        if status:
            wanted = parse_enum(InstanceStatus, status, 'status')
            instances = [i for i in instances if i.status == wanted]
    else:
        instances = system.runtime.list_instances(
            status=parse_enum(InstanceStatus, status, 'status') if status else None,
            entity_type=entity_type
        )
    now = system.runtime.clock()
    return {"instances": [instance_response(i, now) for i in instances]}


@app.get("/instances/stats")
async def instance_statistics(system: ApprovalSystem = Depends(get_approval_system)):
    return system.runtime.get_statistics()


@app.get("/instances/{instance_id}")
async def get_instance(
    instance_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.get_instance(instance_id)
    return instance_response(instance, system.runtime.clock())


@app.get("/instances/{instance_id}/audit")
async def get_instance_audit(
    instance_id: str,
    limit: Optional[int] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Audit trail of one instance, oldest first"""
    system.runtime.get_instance(instance_id)
    events = system.audit_trail.get_events_for_entity('workflow_instance', instance_id, limit)
    return {"events": [e.to_dict() for e in events]}


@app.post("/instances/{instance_id}/approve")
async def approve_step(
    instance_id: str,
    request: ApproveRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.approve_step(
        instance_id, request.actor_id, comment=request.comment, attachments=request.attachments
    )
    return instance_response(instance, system.runtime.clock())


@app.post("/instances/{instance_id}/reject")
async def reject_step(
    instance_id: str,
    request: RejectRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.reject_step(instance_id, request.actor_id, request.reason)
    return instance_response(instance, system.runtime.clock())


@app.post("/instances/{instance_id}/delegate")
async def delegate_step(
    instance_id: str,
    request: DelegateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.delegate_step(instance_id, request.actor_id, request.delegate_id)
    return instance_response(instance, system.runtime.clock())


@app.post("/instances/{instance_id}/skip")
async def skip_step(
    instance_id: str,
    request: SkipRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.skip_step(instance_id, request.actor_id, request.reason)
    return instance_response(instance, system.runtime.clock())


@app.post("/instances/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    request: CancelRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    instance = system.runtime.cancel(instance_id, request.actor_id, reason=request.reason)
    return instance_response(instance, system.runtime.clock())


@app.get("/approvals/pending")
async def pending_approvals(
    actor_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Open instances waiting on this actor, most urgent first"""
    instances = system.runtime.get_pending_approvals_for(actor_id)
    now = system.runtime.clock()
    return {"actor_id": actor_id, "instances": [instance_response(i, now) for i in instances]}


# SLA Endpoints
@app.post("/sla/sweep")
async def run_sla_sweep(system: ApprovalSystem = Depends(get_approval_system)):
    """Run one SLA/escalation pass immediately"""
    return system.sweeper.sweep().to_dict()


# Principal Directory Endpoints
@app.post("/principals", status_code=status.HTTP_201_CREATED)
async def register_principal(
    request: RegisterPrincipalRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    principal = system.identity.register(
        request.id, request.display_name, roles=request.roles, email=request.email
    )
    return principal.to_dict()


@app.get("/principals")
async def list_principals(
    role: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    return {"principals": [p.to_dict() for p in system.identity.list_principals(role)]}


# System Information
@app.get("/")
async def root():
    """Root endpoint with system information"""
    return {
        "system": "Approval Workflow Engine",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "templates": "/templates",
            "instances": "/instances",
            "pending_approvals": "/approvals/pending",
            "sla_sweep": "/sla/sweep",
            "principals": "/principals"
        }
    }


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "approval_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
