"""
Workflow Instance Module

Runtime state machine for approval workflow instances. An instance walks the
steps of its template one at a time: approvers of the open step approve
(subject to the step's quorum rule), reject (which terminates the instance),
delegate or skip; the initiator or an elevated principal may cancel.

Every mutation is a short load-modify-save guarded by a compare-and-swap on
the instance's ``version``, so concurrent writers on the same instance never
double-advance it while unrelated instances stay fully parallel. A losing
writer receives ConflictError and must reload.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime, format_datetime
from .audit import AuditTrail, AuditEventType
from .identity import IdentityDirectory
from .resolvers import ApproverResolver, ResolutionContext
from .templates import (
    AutoEscalation, StepAction, StepDefinition, TemplateStatus, WorkflowTemplate,
    WorkflowTemplateStore, parse_enum
)
from .events import NotificationEventType
from .notifications import NotificationPublisher
from .errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError, WorkflowStateError
)
from .logging_config import log_action


logger = logging.getLogger("approval_engine.workflows")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(Enum):
    """Status of a workflow instance"""
    PENDING = "PENDING"  # transient, never persisted
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {InstanceStatus.APPROVED, InstanceStatus.REJECTED, InstanceStatus.CANCELLED}

CANCEL_ACTION = "CANCEL"


class Priority(Enum):
    """Urgency of an open instance, derived from the remaining SLA time"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


@dataclass
class StepExecution:
    """
    One visit of one template step.

    The step configuration in force when the step started is snapshotted here
    together with the resolved approvers, so later template edits never change
    a step that is already open.
    """
    step_order: int
    step_name: str
    assigned_to: List[str]
    started_at: datetime
    requires_all_approvers: bool = False
    allow_delegation: bool = True
    allowed_actions: List[str] = field(default_factory=list)
    auto_escalate: AutoEscalation = field(default_factory=AutoEscalation)
    sla_hours: Optional[float] = None
    completed_at: Optional[datetime] = None
    action: Optional[str] = None
    action_by: Optional[str] = None
    comment: Optional[str] = None
    attachments: List[str] = field(default_factory=list)
    delegated_to: Optional[str] = None
    delegated_at: Optional[datetime] = None
    delegations: Dict[str, str] = field(default_factory=dict)  # delegator -> delegate
    approvals: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # principal -> decision record
    escalated_at: Optional[datetime] = None
    escalated_to: List[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def effective_approvers(self) -> Set[str]:
        """Resolved approvers plus active delegates plus escalation targets"""
        return set(self.assigned_to) | set(self.delegations.values()) | set(self.escalated_to)

    def allows(self, action: StepAction) -> bool:
        return action.value in self.allowed_actions

    def delegator_for(self, delegate_id: str) -> Optional[str]:
        for delegator, delegate in sorted(self.delegations.items()):
            if delegate == delegate_id:
                return delegator
        return None

    def has_voted(self, principal_id: str) -> bool:
        """Whether the principal's share of the quorum is already recorded"""
        if principal_id in self.approvals:
            return True
        delegate = self.delegations.get(principal_id)
        return delegate is not None and delegate in self.approvals

    def quorum_reached(self) -> bool:
        approved = [record for record in self.approvals.values()
                    if record.get('decision') == StepAction.APPROVE.value]
        # an escalation target's approval closes the step on its own
        if any(record.get('escalation') for record in approved):
            return True
        if not self.requires_all_approvers:
            return bool(approved)
        return all(self.has_voted(p) for p in self.assigned_to)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step_order': self.step_order,
            'step_name': self.step_name,
            'assigned_to': list(self.assigned_to),
            'started_at': format_datetime(self.started_at),
            'requires_all_approvers': self.requires_all_approvers,
            'allow_delegation': self.allow_delegation,
            'allowed_actions': list(self.allowed_actions),
            'auto_escalate': self.auto_escalate.to_dict(),
            'sla_hours': self.sla_hours,
            'completed_at': format_datetime(self.completed_at),
            'action': self.action,
            'action_by': self.action_by,
            'comment': self.comment,
            'attachments': list(self.attachments),
            'delegated_to': self.delegated_to,
            'delegated_at': format_datetime(self.delegated_at),
            'delegations': dict(self.delegations),
            'approvals': {p: dict(r) for p, r in self.approvals.items()},
            'escalated_at': format_datetime(self.escalated_at),
            'escalated_to': list(self.escalated_to)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepExecution':
        return cls(
            step_order=data['step_order'],
            step_name=data['step_name'],
            assigned_to=list(data.get('assigned_to') or []),
            started_at=parse_datetime(data['started_at']),
            requires_all_approvers=data.get('requires_all_approvers', False),
            allow_delegation=data.get('allow_delegation', True),
            allowed_actions=list(data.get('allowed_actions') or []),
            auto_escalate=AutoEscalation.from_dict(data.get('auto_escalate')),
            sla_hours=data.get('sla_hours'),
            completed_at=parse_datetime(data.get('completed_at')),
            action=data.get('action'),
            action_by=data.get('action_by'),
            comment=data.get('comment'),
            attachments=list(data.get('attachments') or []),
            delegated_to=data.get('delegated_to'),
            delegated_at=parse_datetime(data.get('delegated_at')),
            delegations=dict(data.get('delegations') or {}),
            approvals={p: dict(r) for p, r in (data.get('approvals') or {}).items()},
            escalated_at=parse_datetime(data.get('escalated_at')),
            escalated_to=list(data.get('escalated_to') or [])
        )


@dataclass
class SLAState:
    """Instance-level SLA bookkeeping"""
    expected_completion_at: Optional[datetime] = None
    actual_completion_at: Optional[datetime] = None
    is_overdue: bool = False
    escalated: bool = False
    escalated_at: Optional[datetime] = None
    escalated_to: List[str] = field(default_factory=list)
    reminder_sent_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'expected_completion_at': format_datetime(self.expected_completion_at),
            'actual_completion_at': format_datetime(self.actual_completion_at),
            'is_overdue': self.is_overdue,
            'escalated': self.escalated,
            'escalated_at': format_datetime(self.escalated_at),
            'escalated_to': list(self.escalated_to),
            'reminder_sent_at': format_datetime(self.reminder_sent_at)
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SLAState':
        data = data or {}
        return cls(
            expected_completion_at=parse_datetime(data.get('expected_completion_at')),
            actual_completion_at=parse_datetime(data.get('actual_completion_at')),
            is_overdue=data.get('is_overdue', False),
            escalated=data.get('escalated', False),
            escalated_at=parse_datetime(data.get('escalated_at')),
            escalated_to=list(data.get('escalated_to') or []),
            reminder_sent_at=parse_datetime(data.get('reminder_sent_at'))
        )


@dataclass
class WorkflowInstance(StorageRecord):
    """One running execution of a template against a concrete entity"""
    template_id: str
    template_name: str
    entity_type: str
    entity_id: str
    initiated_by: str
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_index: int = 0
    step_history: List[StepExecution] = field(default_factory=list)
    sla: SLAState = field(default_factory=SLAState)
    context: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    final_decision: Optional[str] = None
    final_comment: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def current_execution(self) -> Optional[StepExecution]:
        """The open step entry while IN_PROGRESS, else None"""
        if self.status != InstanceStatus.IN_PROGRESS or not self.step_history:
            return None
        execution = self.step_history[-1]
        return execution if execution.is_open else None

    def priority(self, now: Optional[datetime] = None) -> Priority:
        now = now or utc_now()
        deadline = self.sla.expected_completion_at
        if self.sla.is_overdue or (deadline and now > deadline):
            return Priority.URGENT
        if deadline is None:
            return Priority.MEDIUM
        hours_left = (deadline - now).total_seconds() / 3600
        if hours_left < 24:
            return Priority.HIGH
        if hours_left < 72:
            return Priority.MEDIUM
        return Priority.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'template_id': self.template_id,
            'template_name': self.template_name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'initiated_by': self.initiated_by,
            'status': self.status.value,
            'current_step_index': self.current_step_index,
            'step_history': [s.to_dict() for s in self.step_history],
            'sla': self.sla.to_dict(),
            'context': self.context,
            'completed_at': format_datetime(self.completed_at),
            'final_decision': self.final_decision,
            'final_comment': self.final_comment,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            template_id=data['template_id'],
            template_name=data.get('template_name') or "",
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            initiated_by=data['initiated_by'],
            status=InstanceStatus(data['status']),
            current_step_index=data.get('current_step_index', 0),
            step_history=[StepExecution.from_dict(s) for s in data.get('step_history') or []],
            sla=SLAState.from_dict(data.get('sla')),
            context=data.get('context') or {},
            completed_at=parse_datetime(data.get('completed_at')),
            final_decision=data.get('final_decision'),
            final_comment=data.get('final_comment'),
            version=data.get('version', 0)
        )


class WorkflowInstanceRuntime:
    """Starts instances and applies approver actions to them"""

    TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface, templates: WorkflowTemplateStore,
                 resolver: ApproverResolver, identity: IdentityDirectory,
                 publisher: NotificationPublisher, audit: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None,
                 elevated_roles: Optional[List[str]] = None,
                 default_allowed_actions: Optional[List[str]] = None):
        self.storage = storage
        self.templates = templates
        self.resolver = resolver
        self.identity = identity
        self.publisher = publisher
        self.audit = audit or AuditTrail(storage)
        self.clock = clock or utc_now
        self.elevated_roles = list(elevated_roles if elevated_roles is not None else ["admin"])
        self.default_allowed_actions = [
            parse_enum(StepAction, a, 'allowed action').value
            for a in (default_allowed_actions or ["APPROVE", "REJECT", "DELEGATE"])
        ]

    # Instance lifecycle

    def start_instance(self, template_id: str, entity_type: str, entity_id: str,
                       initiated_by: str, context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Create an instance of an ACTIVE template and open its first step"""
        template = self.templates.get(template_id)
        if template.status != TemplateStatus.ACTIVE:
            raise WorkflowStateError(f"Template '{template.name}' is not active",
                                     template_id=template_id, status=template.status.value)
        if not entity_type or not entity_id:
            raise ValidationError("entity_type and entity_id are required")

        now = self.clock()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            template_id=template.id,
            template_name=template.name,
            entity_type=entity_type,
            entity_id=entity_id,
            initiated_by=initiated_by,
            context=dict(context or {})
        )

        total_hours = template.total_sla_hours()
        if total_hours is not None:
            instance.sla.expected_completion_at = now + timedelta(hours=total_hours)

        instance.step_history.append(self._open_step(instance, template, template.steps[0], now))
        instance.current_step_index = 0
        instance.status = InstanceStatus.IN_PROGRESS

        self._persist(instance, None, now)

        self.audit.log_event(
            AuditEventType.INSTANCE_STARTED,
            'workflow_instance',
            instance.id,
            {'template_id': template.id, 'entity_type': entity_type, 'entity_id': entity_id,
             'assigned_to': instance.step_history[0].assigned_to},
            initiated_by
        )
        log_action(logger, "info", f"Started '{template.name}' for {entity_type}:{entity_id}",
                   user_id=initiated_by, action="start_instance", resource=instance.id,
                   extra={'template_id': template.id,
                          'expected_completion_at': format_datetime(instance.sla.expected_completion_at)})

        self.publisher.announce(NotificationEventType.ON_SUBMISSION,
                                template.notifications.on_submission, instance,
                                {'entity_type': entity_type, 'entity_id': entity_id})
        return instance

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        data = self.storage.load(self.TABLE, instance_id)
        if not data:
            raise NotFoundError(f"Workflow instance {instance_id} not found", instance_id=instance_id)
        return WorkflowInstance.from_dict(data)

    # Approver actions

    def approve_step(self, instance_id: str, actor_id: str, comment: Optional[str] = None,
                     attachments: Optional[List[str]] = None) -> WorkflowInstance:
        """
        Record an approval on the open step.

        Below quorum the approval is stored and the step stays open; once the
        quorum is met the step closes and the instance advances to the next
        step or finishes APPROVED.
        """
        instance = self.get_instance(instance_id)
        execution = self._require_open_step(instance, StepAction.APPROVE)
        self._require_approver(instance, execution, actor_id)
        if execution.has_voted(actor_id):
            raise WorkflowStateError(f"{actor_id} already approved this step",
                                     instance_id=instance_id, step_order=execution.step_order)

        expected_version = instance.version
        now = self.clock()
        execution.approvals[actor_id] = {
            'decision': StepAction.APPROVE.value,
            'at': now.isoformat(),
            'comment': comment,
            'attachments': list(attachments or []),
            'on_behalf_of': execution.delegator_for(actor_id) if actor_id not in execution.assigned_to else None,
            'escalation': actor_id in execution.escalated_to and actor_id not in execution.assigned_to
        }

        if not execution.quorum_reached():
            self._persist(instance, expected_version, now)
            self.audit.log_event(
                AuditEventType.STEP_PARTIALLY_APPROVED,
                'workflow_instance',
                instance.id,
                {'step_order': execution.step_order, 'approvals': sorted(execution.approvals)},
                actor_id
            )
            log_action(logger, "info", f"Partial approval on step {execution.step_order}",
                       user_id=actor_id, action="approve_partial", resource=instance.id,
                       extra={'approved': sorted(execution.approvals),
                              'assigned_to': execution.assigned_to})
            return instance

        self._close_step(execution, StepAction.APPROVE.value, actor_id, now, comment, attachments)
        template = self.templates.get(instance.template_id)
        self._advance(instance, template, now)
        self._persist(instance, expected_version, now)

        self.audit.log_event(
            AuditEventType.STEP_APPROVED,
            'workflow_instance',
            instance.id,
            {'step_order': execution.step_order, 'comment': comment,
             'status': instance.status.value, 'current_step_index': instance.current_step_index},
            actor_id
        )
        log_action(logger, "info", f"Step {execution.step_order} approved",
                   user_id=actor_id, action="approve_step", resource=instance.id,
                   extra={'status': instance.status.value,
                          'current_step_index': instance.current_step_index})

        self.publisher.announce(NotificationEventType.ON_APPROVAL,
                                template.notifications.on_approval, instance,
                                {'step_order': execution.step_order, 'approved_by': actor_id,
                                 'final': instance.is_terminal})
        return instance

    def reject_step(self, instance_id: str, actor_id: str, reason: str) -> WorkflowInstance:
        """Reject the open step, terminating the instance regardless of quorum"""
        instance = self.get_instance(instance_id)
        execution = self._require_open_step(instance, StepAction.REJECT)
        self._require_approver(instance, execution, actor_id)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject", instance_id=instance_id)

        expected_version = instance.version
        now = self.clock()
        execution.approvals[actor_id] = {
            'decision': StepAction.REJECT.value,
            'at': now.isoformat(),
            'comment': reason
        }
        self._close_step(execution, StepAction.REJECT.value, actor_id, now, reason)
        self._finish(instance, InstanceStatus.REJECTED, now, decision=InstanceStatus.REJECTED.value,
                     comment=reason)
        self._persist(instance, expected_version, now)

        self.audit.log_event(
            AuditEventType.STEP_REJECTED,
            'workflow_instance',
            instance.id,
            {'step_order': execution.step_order, 'reason': reason},
            actor_id
        )
        log_action(logger, "info", f"Step {execution.step_order} rejected",
                   user_id=actor_id, action="reject_step", resource=instance.id,
                   extra={'reason': reason})

        template = self.templates.get(instance.template_id)
        self.publisher.announce(NotificationEventType.ON_REJECTION,
                                template.notifications.on_rejection, instance,
                                {'step_order': execution.step_order, 'rejected_by': actor_id,
                                 'reason': reason})
        return instance

    def delegate_step(self, instance_id: str, actor_id: str, delegate_id: str) -> WorkflowInstance:
        """Let another principal act for the actor on the open step execution only"""
        instance = self.get_instance(instance_id)
        execution = self._require_open_step(instance, StepAction.DELEGATE)
        if not execution.allow_delegation:
            raise AuthorizationError(f"Step {execution.step_order} does not allow delegation",
                                     instance_id=instance_id, step_order=execution.step_order)
        if actor_id not in execution.assigned_to:
            raise AuthorizationError(f"{actor_id} is not an assigned approver of this step",
                                     instance_id=instance_id, actor_id=actor_id)
        if not delegate_id or delegate_id == actor_id:
            raise ValidationError("A delegate other than the actor is required",
                                  instance_id=instance_id)
        other_delegates = {d for owner, d in execution.delegations.items() if owner != actor_id}
        if delegate_id in execution.assigned_to or delegate_id in other_delegates:
            # one principal may hold only one share of the quorum
            raise ValidationError(f"{delegate_id} already holds an approval share on this step",
                                  instance_id=instance_id, delegate_id=delegate_id)
        if execution.has_voted(actor_id):
            raise WorkflowStateError(f"{actor_id} already approved this step",
                                     instance_id=instance_id, step_order=execution.step_order)

        expected_version = instance.version
        now = self.clock()
        execution.delegations[actor_id] = delegate_id
        execution.delegated_to = delegate_id
        execution.delegated_at = now
        self._persist(instance, expected_version, now)

        self.audit.log_event(
            AuditEventType.STEP_DELEGATED,
            'workflow_instance',
            instance.id,
            {'step_order': execution.step_order, 'delegate_id': delegate_id},
            actor_id
        )
        log_action(logger, "info", f"Step {execution.step_order} delegated to {delegate_id}",
                   user_id=actor_id, action="delegate_step", resource=instance.id)
        return instance

    def skip_step(self, instance_id: str, actor_id: str, reason: str) -> WorkflowInstance:
        """Close the open step without a quorum, when the step allows SKIP"""
        instance = self.get_instance(instance_id)
        execution = self._require_open_step(instance, StepAction.SKIP)
        self._require_approver(instance, execution, actor_id)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to skip a step", instance_id=instance_id)

        expected_version = instance.version
        now = self.clock()
        self._close_step(execution, StepAction.SKIP.value, actor_id, now, reason)
        template = self.templates.get(instance.template_id)
        self._advance(instance, template, now)
        self._persist(instance, expected_version, now)

        self.audit.log_event(
            AuditEventType.STEP_SKIPPED,
            'workflow_instance',
            instance.id,
            {'step_order': execution.step_order, 'reason': reason,
             'status': instance.status.value},
            actor_id
        )
        log_action(logger, "info", f"Step {execution.step_order} skipped",
                   user_id=actor_id, action="skip_step", resource=instance.id,
                   extra={'reason': reason})

        self.publisher.announce(NotificationEventType.ON_APPROVAL,
                                template.notifications.on_approval, instance,
                                {'step_order': execution.step_order, 'skipped_by': actor_id,
                                 'final': instance.is_terminal})
        return instance

    def cancel(self, instance_id: str, actor_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        """Move a non-terminal instance straight to CANCELLED"""
        instance = self.get_instance(instance_id)
        if instance.is_terminal:
            raise WorkflowStateError(f"Instance is already {instance.status.value}",
                                     instance_id=instance_id, status=instance.status.value)
        if actor_id != instance.initiated_by and not self.identity.has_any_role(actor_id, self.elevated_roles):
            raise AuthorizationError(f"{actor_id} may not cancel this instance",
                                     instance_id=instance_id, actor_id=actor_id)

        expected_version = instance.version
        now = self.clock()
        execution = instance.current_execution()
        if execution:
            self._close_step(execution, CANCEL_ACTION, actor_id, now, reason)
        self._finish(instance, InstanceStatus.CANCELLED, now, comment=reason)
        self._persist(instance, expected_version, now)

        self.audit.log_event(
            AuditEventType.INSTANCE_CANCELLED,
            'workflow_instance',
            instance.id,
            {'reason': reason, 'current_step_index': instance.current_step_index},
            actor_id
        )
        log_action(logger, "info", "Instance cancelled",
                   user_id=actor_id, action="cancel_instance", resource=instance.id,
                   extra={'reason': reason})
        return instance

    # Queries

    def list_instances(self, status: Optional[InstanceStatus] = None,
                       entity_type: Optional[str] = None) -> List[WorkflowInstance]:
        """Instances, newest first"""
        filters = {}
        if status:
            filters['status'] = status.value
        if entity_type:
            filters['entity_type'] = entity_type
        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def get_instances_for_entity(self, entity_type: str, entity_id: str) -> List[WorkflowInstance]:
        instances = self.storage.find(self.TABLE, {'entity_type': entity_type, 'entity_id': entity_id})
        return sorted((WorkflowInstance.from_dict(d) for d in instances),
                      key=lambda i: i.created_at, reverse=True)

    def get_pending_approvals_for(self, actor_id: str) -> List[WorkflowInstance]:
        """Open instances waiting on the actor's decision, most urgent first"""
        now = self.clock()
        pending = []
        for instance in self.list_instances(status=InstanceStatus.IN_PROGRESS):
            execution = instance.current_execution()
            if not execution or actor_id not in execution.effective_approvers():
                continue
            if execution.has_voted(actor_id):
                continue
            pending.append(instance)

        urgency = [Priority.URGENT, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
        return sorted(pending, key=lambda i: (urgency.index(i.priority(now)), i.created_at))

    def get_statistics(self) -> Dict[str, Any]:
        """Counts by status and entity type plus the number of overdue instances"""
        now = self.clock()
        instances = [WorkflowInstance.from_dict(d) for d in self.storage.load_all(self.TABLE)]

        by_status = {s.value: 0 for s in InstanceStatus if s != InstanceStatus.PENDING}
        by_entity_type: Dict[str, int] = {}
        overdue = 0
        for instance in instances:
            by_status[instance.status.value] = by_status.get(instance.status.value, 0) + 1
            by_entity_type[instance.entity_type] = by_entity_type.get(instance.entity_type, 0) + 1
            if instance.status == InstanceStatus.IN_PROGRESS and instance.priority(now) == Priority.URGENT:
                overdue += 1

        return {
            'total': len(instances),
            'by_status': by_status,
            'by_entity_type': by_entity_type,
            'overdue': overdue
        }

    # Persistence

    def save(self, instance: WorkflowInstance, expected_version: int) -> WorkflowInstance:
        """Compare-and-swap write used by out-of-band updaters such as the SLA sweeper"""
        self._persist(instance, expected_version, self.clock())
        return instance

    def _persist(self, instance: WorkflowInstance, expected_version: Optional[int],
                 now: datetime) -> None:
        instance.version = (expected_version or 0) + 1
        instance.updated_at = now
        try:
            self.storage.save_versioned(self.TABLE, instance.id, instance.to_dict(), expected_version)
        except ConflictError as e:
            instance.version = expected_version or 0
            log_action(logger, "warning", "Version conflict, caller must reload",
                       action="conflict", resource=instance.id,
                       extra={'expected_version': e.expected_version,
                              'actual_version': e.actual_version})
            raise

    # Private helpers

    def _require_open_step(self, instance: WorkflowInstance,
                           action: Optional[StepAction] = None) -> StepExecution:
        if instance.status != InstanceStatus.IN_PROGRESS:
            raise WorkflowStateError(f"Instance is {instance.status.value}",
                                     instance_id=instance.id, status=instance.status.value)
        execution = instance.current_execution()
        if execution is None:
            raise WorkflowStateError("Instance has no open step", instance_id=instance.id)
        if action and not execution.allows(action):
            raise WorkflowStateError(f"Step {execution.step_order} does not allow {action.value}",
                                     instance_id=instance.id, step_order=execution.step_order)
        return execution

    def _require_approver(self, instance: WorkflowInstance, execution: StepExecution,
                          actor_id: str) -> None:
        if actor_id not in execution.effective_approvers():
            raise AuthorizationError(f"{actor_id} is not an approver of step {execution.step_order}",
                                     instance_id=instance.id, actor_id=actor_id,
                                     step_order=execution.step_order)

    def _open_step(self, instance: WorkflowInstance, template: WorkflowTemplate,
                   step: StepDefinition, now: datetime) -> StepExecution:
        """Resolve the step's approvers once and freeze them with the step config"""
        context = ResolutionContext(
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            initiated_by=instance.initiated_by,
            entity_data=instance.context,
            template_id=template.id,
            template_created_by=template.created_by,
            step_order=step.order
        )
        assigned = self.resolver.resolve(step.approver_spec, context)
        if not assigned:
            raise WorkflowStateError(f"No approvers resolved for step {step.order} '{step.name}'",
                                     instance_id=instance.id, step_order=step.order)

        allowed = [a.value for a in step.allowed_actions] or list(self.default_allowed_actions)
        return StepExecution(
            step_order=step.order,
            step_name=step.name,
            assigned_to=sorted(assigned),
            started_at=now,
            requires_all_approvers=step.requires_all_approvers,
            allow_delegation=step.allow_delegation,
            allowed_actions=allowed,
            auto_escalate=AutoEscalation.from_dict(step.auto_escalate.to_dict()),
            sla_hours=step.sla_hours
        )

    def _advance(self, instance: WorkflowInstance, template: WorkflowTemplate, now: datetime) -> None:
        """Open the next step of the current template, or finish APPROVED"""
        next_step = template.get_step(instance.current_step_index + 1)
        if next_step is None:
            self._finish(instance, InstanceStatus.APPROVED, now, decision=InstanceStatus.APPROVED.value)
            return
        instance.step_history.append(self._open_step(instance, template, next_step, now))
        instance.current_step_index += 1

    @staticmethod
    def _close_step(execution: StepExecution, action: str, actor_id: str, now: datetime,
                    comment: Optional[str] = None, attachments: Optional[List[str]] = None) -> None:
        execution.completed_at = now
        execution.action = action
        execution.action_by = actor_id
        execution.comment = comment
        if attachments:
            execution.attachments.extend(attachments)

    @staticmethod
    def _finish(instance: WorkflowInstance, status: InstanceStatus, now: datetime,
                decision: Optional[str] = None, comment: Optional[str] = None) -> None:
        instance.status = status
        instance.completed_at = now
        instance.sla.actual_completion_at = now
        instance.final_decision = decision
        instance.final_comment = comment
