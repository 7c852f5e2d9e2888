"""
System Wiring Module

Builds every engine component from configuration and holds them together,
the way the API and run.py consume them.
"""

from datetime import datetime
from typing import Callable, Optional
import logging

from .config import ApprovalEngineConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .identity import InMemoryIdentityDirectory
from .resolvers import ApproverResolver, DynamicRuleRegistry
from .templates import WorkflowTemplateStore
from .events import EventDispatcher
from .notifications import LoggingNotificationSink, NotificationPublisher
from .workflows import WorkflowInstanceRuntime
from .sweeper import SLASweeper


logger = logging.getLogger("approval_engine.system")


class ApprovalSystem:
    """Approval engine with all components initialized"""

    def __init__(self, config: Optional[ApprovalEngineConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or get_config()

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)

        self.identity = InMemoryIdentityDirectory(self.storage, self.audit_trail)
        self.rules = DynamicRuleRegistry()
        self.resolver = ApproverResolver(self.identity, self.rules)
        self.templates = WorkflowTemplateStore(self.storage, self.audit_trail,
                                               rule_exists=self.resolver.rule_exists)

        self.dispatcher = EventDispatcher()
        self.notification_sink = LoggingNotificationSink(self.dispatcher)
        self.publisher = NotificationPublisher(self.dispatcher)

        self.runtime = WorkflowInstanceRuntime(
            self.storage, self.templates, self.resolver, self.identity,
            self.publisher, self.audit_trail,
            clock=clock,
            elevated_roles=self.config.elevated_roles,
            default_allowed_actions=self.config.default_allowed_actions
        )
        self.sweeper = SLASweeper(
            self.runtime,
            interval_seconds=self.config.sweep_interval_seconds,
            max_conflict_retries=self.config.max_conflict_retries
        )

    def start(self) -> None:
        """Start background processes"""
        self.sweeper.start()

    def shutdown(self) -> None:
        self.sweeper.stop()
        self.dispatcher.clear()
        self.storage.close()
        logger.info("Approval system stopped")
