"""
Workflow Template Module

Reusable approval process definitions: an ordered list of steps, each with
its own approver specification, quorum rule, SLA and escalation policy,
plus the template's notification policy. Templates are created DRAFT,
activated to become usable, and may later be deactivated or archived.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError, WorkflowStateError
from .logging_config import log_action


E = TypeVar("E", bound=Enum)

logger = logging.getLogger("approval_engine.templates")


class ApplicableType(Enum):
    """Entity kinds a template can approve"""
    FORM_SUBMISSION = "FORM_SUBMISSION"
    REPORT = "REPORT"
    INDICATOR_UPDATE = "INDICATOR_UPDATE"
    BUDGET_CHANGE = "BUDGET_CHANGE"
    PROJECT_MILESTONE = "PROJECT_MILESTONE"
    CUSTOM = "CUSTOM"


class TemplateStatus(Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class ApproverKind(Enum):
    SPECIFIC_USERS = "SPECIFIC_USERS"
    ROLE = "ROLE"
    DYNAMIC = "DYNAMIC"


class StepAction(Enum):
    """Actions an approver may take on a step"""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    DELEGATE = "DELEGATE"
    SKIP = "SKIP"


class RecipientClass(Enum):
    """Who receives a notification"""
    ASSIGNEE = "ASSIGNEE"  # current step's effective approvers
    CREATOR = "CREATOR"  # the instance initiator
    ALL_APPROVERS = "ALL_APPROVERS"  # everyone assigned so far


def parse_enum(enum_type: Type[E], value: Any, field_name: str) -> E:
    """Convert a raw value to an enum member, raising ValidationError"""
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_type)
        raise ValidationError(f"Invalid {field_name} '{value}' (expected one of: {allowed})",
                              field=field_name)


TRUE_VALUES = {"true", "yes", "1"}
FALSE_VALUES = {"false", "no", "0"}


def parse_bool(value: Any, field_name: str, default: bool = False) -> bool:
    """Strict boolean parsing; strings like "false" are not truthy"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in TRUE_VALUES | FALSE_VALUES:
        return value.strip().lower() in TRUE_VALUES
    raise ValidationError(f"{field_name} must be a boolean, got {value!r}", field=field_name)


def parse_hours(value: Any, field_name: str) -> Optional[float]:
    """Optional number of hours"""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number of hours, got {value!r}", field=field_name)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number of hours, got {value!r}", field=field_name)


@dataclass
class ApproverSpec:
    """Abstract description of who approves a step"""
    kind: ApproverKind = ApproverKind.SPECIFIC_USERS
    users: List[str] = field(default_factory=list)
    role: Optional[str] = None
    dynamic_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'users': list(self.users),
            'role': self.role,
            'dynamic_rule': self.dynamic_rule
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApproverSpec':
        return cls(
            kind=parse_enum(ApproverKind, data.get('kind', 'SPECIFIC_USERS'), 'approver kind'),
            users=list(data.get('users') or []),
            role=data.get('role'),
            dynamic_rule=data.get('dynamic_rule')
        )


@dataclass
class AutoEscalation:
    """One-time widening of a step's approvers once it has been open too long"""
    enabled: bool = False
    escalate_to: List[str] = field(default_factory=list)
    after_hours: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'escalate_to': list(self.escalate_to),
            'after_hours': self.after_hours
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AutoEscalation':
        data = data or {}
        return cls(
            enabled=parse_bool(data.get('enabled'), 'auto_escalate.enabled'),
            escalate_to=list(data.get('escalate_to') or []),
            after_hours=parse_hours(data.get('after_hours'), 'auto_escalate.after_hours')
        )


@dataclass
class StepDefinition:
    """Definition of a single approval step"""
    order: int
    name: str
    approver_spec: ApproverSpec
    description: str = ""
    requires_all_approvers: bool = False
    allow_delegation: bool = True
    sla_hours: Optional[float] = None
    auto_escalate: AutoEscalation = field(default_factory=AutoEscalation)
    allowed_actions: List[StepAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order': self.order,
            'name': self.name,
            'description': self.description,
            'approver_spec': self.approver_spec.to_dict(),
            'requires_all_approvers': self.requires_all_approvers,
            'allow_delegation': self.allow_delegation,
            'sla_hours': self.sla_hours,
            'auto_escalate': self.auto_escalate.to_dict(),
            'allowed_actions': [a.value for a in self.allowed_actions]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepDefinition':
        if 'order' not in data:
            raise ValidationError("Every step needs an order", field='order')
        try:
            order = int(data['order'])
        except (TypeError, ValueError):
            raise ValidationError(f"Step order must be an integer, got {data['order']!r}", field='order')
        return cls(
            order=order,
            name=data.get('name') or f"Step {order}",
            description=data.get('description') or "",
            approver_spec=ApproverSpec.from_dict(data.get('approver_spec') or {}),
            requires_all_approvers=parse_bool(data.get('requires_all_approvers'), 'requires_all_approvers'),
            allow_delegation=parse_bool(data.get('allow_delegation'), 'allow_delegation', default=True),
            sla_hours=parse_hours(data.get('sla_hours'), 'sla_hours'),
            auto_escalate=AutoEscalation.from_dict(data.get('auto_escalate')),
            allowed_actions=[parse_enum(StepAction, a, 'allowed action')
                             for a in data.get('allowed_actions') or []]
        )


@dataclass
class NotificationRule:
    """Whether, to whom and with which message template an event is announced"""
    enabled: bool = False
    recipient_class: RecipientClass = RecipientClass.ASSIGNEE
    template_id: Optional[str] = None
    hours_before_sla: Optional[float] = None  # beforeSLA reminders only

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'recipient_class': self.recipient_class.value,
            'template_id': self.template_id,
            'hours_before_sla': self.hours_before_sla
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'NotificationRule':
        data = data or {}
        return cls(
            enabled=parse_bool(data.get('enabled'), 'notification enabled'),
            recipient_class=parse_enum(RecipientClass, data.get('recipient_class', 'ASSIGNEE'),
                                       'recipient class'),
            template_id=data.get('template_id'),
            hours_before_sla=parse_hours(data.get('hours_before_sla'), 'hours_before_sla')
        )


@dataclass
class NotificationPolicy:
    on_submission: NotificationRule = field(default_factory=NotificationRule)
    on_approval: NotificationRule = field(default_factory=NotificationRule)
    on_rejection: NotificationRule = field(default_factory=NotificationRule)
    before_sla: NotificationRule = field(default_factory=NotificationRule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'on_submission': self.on_submission.to_dict(),
            'on_approval': self.on_approval.to_dict(),
            'on_rejection': self.on_rejection.to_dict(),
            'before_sla': self.before_sla.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'NotificationPolicy':
        data = data or {}
        return cls(
            on_submission=NotificationRule.from_dict(data.get('on_submission')),
            on_approval=NotificationRule.from_dict(data.get('on_approval')),
            on_rejection=NotificationRule.from_dict(data.get('on_rejection')),
            before_sla=NotificationRule.from_dict(data.get('before_sla'))
        )


@dataclass
class WorkflowTemplate(StorageRecord):
    """Reusable approval workflow definition"""
    name: str
    applicable_type: ApplicableType
    steps: List[StepDefinition] = field(default_factory=list)
    description: str = ""
    notifications: NotificationPolicy = field(default_factory=NotificationPolicy)
    status: TemplateStatus = TemplateStatus.DRAFT
    created_by: str = ""
    updated_by: Optional[str] = None

    def get_step(self, index: int) -> Optional[StepDefinition]:
        """Step at a 0-based position, or None past the end"""
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def total_sla_hours(self) -> Optional[float]:
        """Sum of step SLAs, or None unless every step defines one"""
        if not self.steps or any(step.sla_hours is None for step in self.steps):
            return None
        return sum(step.sla_hours for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'name': self.name,
            'description': self.description,
            'applicable_type': self.applicable_type.value,
            'steps': [step.to_dict() for step in self.steps],
            'notifications': self.notifications.to_dict(),
            'status': self.status.value,
            'created_by': self.created_by,
            'updated_by': self.updated_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        steps = [StepDefinition.from_dict(s) for s in data.get('steps') or []]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data.get('name') or "",
            description=data.get('description') or "",
            applicable_type=parse_enum(ApplicableType, data.get('applicable_type', 'CUSTOM'),
                                       'applicable type'),
            steps=sorted(steps, key=lambda s: s.order),
            notifications=NotificationPolicy.from_dict(data.get('notifications')),
            status=parse_enum(TemplateStatus, data.get('status', 'DRAFT'), 'template status'),
            created_by=data.get('created_by') or "",
            updated_by=data.get('updated_by')
        )


class WorkflowTemplateStore:
    """CRUD, validation and lifecycle of workflow templates"""

    TABLE = "workflow_templates"
    UPDATABLE_FIELDS = {'name', 'description', 'applicable_type', 'steps', 'notifications'}

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None,
                 rule_exists: Optional[Callable[[str], bool]] = None):
        self.storage = storage
        self.audit = audit or AuditTrail(storage)
        self.rule_exists = rule_exists

    def create(self, spec: Dict[str, Any], created_by: str = "system") -> WorkflowTemplate:
        """Validate and store a new template in DRAFT status"""
        now = datetime.now(timezone.utc)
        data = dict(spec)
        data.update({
            'id': str(uuid.uuid4()),
            'created_at': now.isoformat(),
            'updated_at': now.isoformat(),
            'status': TemplateStatus.DRAFT.value,
            'created_by': created_by
        })
        template = WorkflowTemplate.from_dict(data)
        self._validate(template)

        self.storage.save(self.TABLE, template.id, template.to_dict())

        self.audit.log_event(
            AuditEventType.TEMPLATE_CREATED,
            'workflow_template',
            template.id,
            {'name': template.name, 'applicable_type': template.applicable_type.value,
             'steps': len(template.steps)},
            created_by
        )
        log_action(logger, "info", f"Template '{template.name}' created",
                   user_id=created_by, action="create_template", resource=template.id)

        return template

    def get(self, template_id: str) -> WorkflowTemplate:
        data = self.storage.load(self.TABLE, template_id)
        if not data:
            raise NotFoundError(f"Workflow template {template_id} not found", template_id=template_id)
        return WorkflowTemplate.from_dict(data)

    def list(self, status: Optional[TemplateStatus] = None,
             applicable_type: Optional[ApplicableType] = None) -> List[WorkflowTemplate]:
        """List templates, optionally filtered by status and applicable type"""
        filters = {}
        if status:
            filters['status'] = status.value
        if applicable_type:
            filters['applicable_type'] = applicable_type.value

        templates = [WorkflowTemplate.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        return sorted(templates, key=lambda t: t.name)

    def update(self, template_id: str, patch: Dict[str, Any],
               updated_by: str = "system") -> WorkflowTemplate:
        """
        Apply a partial update and re-validate.

        Running instances keep the approvers already resolved for visited
        steps; steps they have not reached yet are read from the updated
        template when they start.
        """
        template = self.get(template_id)
        if template.status == TemplateStatus.ARCHIVED:
            raise WorkflowStateError("Archived templates cannot be modified",
                                     template_id=template_id, status=template.status.value)

        unknown = set(patch) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                                  template_id=template_id)

        data = template.to_dict()
        data.update(patch)
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        data['updated_by'] = updated_by
        updated = WorkflowTemplate.from_dict(data)

        self._validate(updated)
        if updated.status == TemplateStatus.ACTIVE and not updated.steps:
            raise ValidationError("An active template must keep at least one step",
                                  template_id=template_id)

        self.storage.save(self.TABLE, template_id, updated.to_dict())

        self.audit.log_event(
            AuditEventType.TEMPLATE_UPDATED,
            'workflow_template',
            template_id,
            {'fields': sorted(patch)},
            updated_by
        )
        log_action(logger, "info", f"Template '{updated.name}' updated",
                   user_id=updated_by, action="update_template", resource=template_id,
                   extra={'fields': sorted(patch)})

        return updated

    def activate(self, template_id: str, actor_id: str = "system") -> WorkflowTemplate:
        """Make a template usable for new instances"""
        template = self.get(template_id)
        if template.status == TemplateStatus.ARCHIVED:
            raise WorkflowStateError("Archived templates cannot be activated",
                                     template_id=template_id, status=template.status.value)
        if not template.steps:
            raise ValidationError("Template must have at least one step to be activated",
                                  template_id=template_id)
        return self._set_status(template, TemplateStatus.ACTIVE, actor_id)

    def deactivate(self, template_id: str, actor_id: str = "system") -> WorkflowTemplate:
        """Stop new instances from starting; running ones continue"""
        template = self.get(template_id)
        if template.status != TemplateStatus.ACTIVE:
            raise WorkflowStateError("Only active templates can be deactivated",
                                     template_id=template_id, status=template.status.value)
        return self._set_status(template, TemplateStatus.INACTIVE, actor_id)

    def archive(self, template_id: str, actor_id: str = "system") -> WorkflowTemplate:
        template = self.get(template_id)
        if template.status == TemplateStatus.ARCHIVED:
            return template
        return self._set_status(template, TemplateStatus.ARCHIVED, actor_id)

    def _set_status(self, template: WorkflowTemplate, status: TemplateStatus,
                    actor_id: str) -> WorkflowTemplate:
        previous = template.status
        template.status = status
        template.updated_at = datetime.now(timezone.utc)
        template.updated_by = actor_id

        self.storage.save(self.TABLE, template.id, template.to_dict())

        self.audit.log_event(
            AuditEventType.TEMPLATE_STATUS_CHANGED,
            'workflow_template',
            template.id,
            {'from': previous.value, 'to': status.value},
            actor_id
        )
        log_action(logger, "info", f"Template '{template.name}' {previous.value} -> {status.value}",
                   user_id=actor_id, action="template_status", resource=template.id)

        return template

    def _validate(self, template: WorkflowTemplate) -> None:
        """Validate a template; empty step lists are allowed while in DRAFT"""
        if not template.name or not template.name.strip():
            raise ValidationError("Template name is required", field='name')

        orders = [step.order for step in template.steps]
        if len(set(orders)) != len(orders):
            raise ValidationError("Step orders must be unique", orders=orders)
        if orders and min(orders) != 1:
            raise ValidationError("First step must be numbered 1", orders=orders)
        for i, order in enumerate(sorted(orders)):
            if order != i + 1:
                raise ValidationError("Step orders must be consecutive", orders=orders)

        for step in template.steps:
            self._validate_step(step)

        reminder = template.notifications.before_sla
        if reminder.hours_before_sla is not None and reminder.hours_before_sla < 0:
            raise ValidationError("hours_before_sla cannot be negative", field='notifications')

    def _validate_step(self, step: StepDefinition) -> None:
        spec = step.approver_spec
        if spec.kind == ApproverKind.SPECIFIC_USERS and not spec.users:
            raise ValidationError(f"Step {step.order}: SPECIFIC_USERS requires at least one user",
                                  step=step.order)
        if spec.kind == ApproverKind.ROLE and not (spec.role or "").strip():
            raise ValidationError(f"Step {step.order}: ROLE requires a role", step=step.order)
        if spec.kind == ApproverKind.DYNAMIC:
            if not (spec.dynamic_rule or "").strip():
                raise ValidationError(f"Step {step.order}: DYNAMIC requires a dynamic rule",
                                      step=step.order)
            if self.rule_exists and not self.rule_exists(spec.dynamic_rule):
                raise ValidationError(f"Step {step.order}: unknown dynamic rule '{spec.dynamic_rule}'",
                                      step=step.order)

        if step.sla_hours is not None and step.sla_hours <= 0:
            raise ValidationError(f"Step {step.order}: sla_hours must be positive", step=step.order)

        escalation = step.auto_escalate
        if escalation.enabled:
            if not escalation.escalate_to:
                raise ValidationError(f"Step {step.order}: escalation needs escalate_to targets",
                                      step=step.order)
            if escalation.after_hours is None or escalation.after_hours <= 0:
                raise ValidationError(f"Step {step.order}: escalation needs positive after_hours",
                                      step=step.order)
