"""
Event System Module

Typed notification events emitted by the engine and a publish/subscribe
dispatcher that hands them to delivery collaborators. Delivery itself
(email, push, in-app) is not the engine's concern.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class NotificationEventType(Enum):
    """Events the engine emits"""
    ON_SUBMISSION = "onSubmission"
    ON_APPROVAL = "onApproval"
    ON_REJECTION = "onRejection"
    BEFORE_SLA = "beforeSLA"
    ESCALATED = "escalated"


@dataclass
class NotificationEvent:
    """Payload handed to notification collaborators"""
    type: NotificationEventType
    instance_id: str
    recipients: List[str]
    template_id: Optional[str] = None  # message template of the notification rule
    workflow_template_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'instance_id': self.instance_id,
            'recipients': list(self.recipients),
            'template_id': self.template_id,
            'workflow_template_id': self.workflow_template_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationEvent':
        return cls(
            type=NotificationEventType(data['type']),
            instance_id=data['instance_id'],
            recipients=list(data.get('recipients') or []),
            template_id=data.get('template_id'),
            workflow_template_id=data.get('workflow_template_id'),
            data=data.get('data') or {},
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


Handler = Callable[[NotificationEvent], None]


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""
    
    def __init__(self):
        self._handlers: Dict[NotificationEventType, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("approval_engine.events")
    
    def subscribe(self, event_type: NotificationEventType, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")
    
    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")
    
    def publish(self, event: NotificationEvent) -> None:
        """Publish event to all subscribers; handler failures never reach the caller"""
        with self._lock:
            handlers = list(self._handlers.get(event.type, [])) + list(self._global_handlers)
        
        self.logger.debug(f"Publishing {event.type.value} for instance {event.instance_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.type.value}: {e}"
                )
    
    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
