"""
Notification Policy Module

Decides whether an engine transition is announced and to whom, according to
the template's notification policy, then publishes the typed event.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional
import logging

from .events import EventDispatcher, NotificationEvent, NotificationEventType
from .templates import NotificationRule, RecipientClass

if TYPE_CHECKING:
    from .workflows import WorkflowInstance


logger = logging.getLogger("approval_engine.notifications")


def resolve_recipients(rule: NotificationRule, instance: 'WorkflowInstance') -> List[str]:
    """Principals addressed by a rule's recipient class"""
    if rule.recipient_class == RecipientClass.CREATOR:
        return [instance.initiated_by]
    if rule.recipient_class == RecipientClass.ALL_APPROVERS:
        everyone = set()
        for execution in instance.step_history:
            everyone.update(execution.effective_approvers())
        return sorted(everyone)
    current = instance.current_execution()
    return sorted(current.effective_approvers()) if current else []


class NotificationPublisher:
    """Builds notification events from template policy and publishes them"""

    def __init__(self, dispatcher: EventDispatcher):
        self.dispatcher = dispatcher

    def announce(self, event_type: NotificationEventType, rule: Optional[NotificationRule],
                 instance: 'WorkflowInstance',
                 data: Optional[Dict[str, Any]] = None) -> Optional[NotificationEvent]:
        """Publish an event if the rule is enabled; returns the event or None"""
        if rule is None or not rule.enabled:
            return None

        recipients = resolve_recipients(rule, instance)
        if not recipients:
            logger.warning(f"No recipients for {event_type.value} on instance {instance.id}")
            return None

        event = NotificationEvent(
            type=event_type,
            instance_id=instance.id,
            recipients=recipients,
            template_id=rule.template_id,
            workflow_template_id=instance.template_id,
            data=data or {}
        )
        self.dispatcher.publish(event)
        return event

    def announce_escalation(self, instance: 'WorkflowInstance', targets: List[str],
                            data: Optional[Dict[str, Any]] = None) -> NotificationEvent:
        """Escalations always reach the escalation targets"""
        event = NotificationEvent(
            type=NotificationEventType.ESCALATED,
            instance_id=instance.id,
            recipients=sorted(targets),
            workflow_template_id=instance.template_id,
            data=data or {}
        )
        self.dispatcher.publish(event)
        return event


class LoggingNotificationSink:
    """Development sink: logs every event instead of delivering it"""

    def __init__(self, dispatcher: EventDispatcher, logger_name: str = "approval_engine.notifications.sink"):
        self.logger = logging.getLogger(logger_name)
        dispatcher.subscribe_all(self.handle)

    def handle(self, event: NotificationEvent) -> None:
        self.logger.info(
            f"{event.type.value} for instance {event.instance_id} -> {', '.join(event.recipients)}"
        )
