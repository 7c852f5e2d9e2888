"""
Tests for the notification event system

Tests typed notification events, the publish/subscribe dispatcher, recipient
resolution by recipient class and the logging sink.
"""

import logging
import pytest
from unittest.mock import Mock

from approval_engine.events import EventDispatcher, NotificationEvent, NotificationEventType
from approval_engine.notifications import (
    LoggingNotificationSink, NotificationPublisher, resolve_recipients
)
from approval_engine.templates import NotificationRule, RecipientClass
from approval_engine.system import ApprovalSystem

from conftest import users_step


def make_event(event_type=NotificationEventType.ON_SUBMISSION):
    return NotificationEvent(type=event_type, instance_id="inst-1", recipients=["alice"],
                             template_id="mail-1", workflow_template_id="tpl-1",
                             data={"step_order": 1})


class TestNotificationEvent:
    """Test event payloads"""

    def test_serialization(self):
        event = make_event(NotificationEventType.BEFORE_SLA)
        data = event.to_dict()

        assert data['type'] == "beforeSLA"
        assert data['recipients'] == ["alice"]
        restored = NotificationEvent.from_dict(data)
        assert restored.type == NotificationEventType.BEFORE_SLA
        assert restored.event_id == event.event_id
        assert restored.timestamp == event.timestamp


class TestEventDispatcher:
    """Test the dispatcher"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(NotificationEventType.ON_APPROVAL, handler)

        dispatcher.publish(make_event(NotificationEventType.ON_SUBMISSION))
        handler.assert_not_called()

        event = make_event(NotificationEventType.ON_APPROVAL)
        dispatcher.publish(event)
        handler.assert_called_once_with(event)

    def test_global_handlers(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(make_event(NotificationEventType.ON_SUBMISSION))
        dispatcher.publish(make_event(NotificationEventType.ESCALATED))
        assert handler.call_count == 2

    def test_failing_handler_is_isolated(self, caplog):
        """Test a broken handler neither stops others nor reaches the publisher"""
        dispatcher = EventDispatcher()
        broken = Mock(side_effect=RuntimeError("smtp down"))
        healthy = Mock()
        dispatcher.subscribe(NotificationEventType.ON_REJECTION, broken)
        dispatcher.subscribe(NotificationEventType.ON_REJECTION, healthy)

        with caplog.at_level(logging.ERROR, logger="approval_engine.events"):
            dispatcher.publish(make_event(NotificationEventType.ON_REJECTION))

        healthy.assert_called_once()
        assert "smtp down" in caplog.text

    def test_clear_drops_all_handlers(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(NotificationEventType.ON_APPROVAL, handler)
        dispatcher.subscribe_all(handler)

        dispatcher.clear()
        dispatcher.publish(make_event(NotificationEventType.ON_APPROVAL))
        handler.assert_not_called()

    def test_shutdown_detaches_subscribers(self, config):
        """Test a stopped system no longer delivers events"""
        system = ApprovalSystem(config=config)
        handler = Mock()
        system.dispatcher.subscribe_all(handler)
        system.shutdown()

        system.dispatcher.publish(make_event())
        handler.assert_not_called()


class TestRecipients:
    """Test recipient classes against a running instance"""

    @pytest.fixture
    def instance(self, runtime, make_template):
        template = make_template([
            users_step(1, "Review", ["alice", "bob"]),
            users_step(2, "Final", ["carol"]),
        ])
        instance = runtime.start_instance(template.id, "REPORT", "rpt-1", "frank")
        runtime.delegate_step(instance.id, "alice", "dave")
        runtime.approve_step(instance.id, "bob")
        return runtime.get_instance(instance.id)

    @pytest.mark.parametrize("recipient_class,expected", [
        (RecipientClass.ASSIGNEE, ["carol"]),
        (RecipientClass.CREATOR, ["frank"]),
        (RecipientClass.ALL_APPROVERS, ["alice", "bob", "carol", "dave"]),
    ])
    def test_recipient_classes(self, instance, recipient_class, expected):
        rule = NotificationRule(enabled=True, recipient_class=recipient_class)
        assert resolve_recipients(rule, instance) == expected

    def test_disabled_rule_publishes_nothing(self, instance):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)
        publisher = NotificationPublisher(dispatcher)

        assert publisher.announce(NotificationEventType.ON_APPROVAL, NotificationRule(), instance) is None
        assert publisher.announce(NotificationEventType.ON_APPROVAL, None, instance) is None
        handler.assert_not_called()

    def test_escalation_always_published(self, instance):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(NotificationEventType.ESCALATED, handler)

        event = NotificationPublisher(dispatcher).announce_escalation(instance, ["gina", "erin"])
        assert event.recipients == ["erin", "gina"]
        assert event.workflow_template_id == instance.template_id
        handler.assert_called_once_with(event)


class TestLoggingSink:
    """Test the development sink"""

    def test_sink_logs_events(self, caplog):
        dispatcher = EventDispatcher()
        LoggingNotificationSink(dispatcher)

        with caplog.at_level(logging.INFO, logger="approval_engine.notifications.sink"):
            dispatcher.publish(make_event(NotificationEventType.ON_SUBMISSION))

        assert "onSubmission for instance inst-1 -> alice" in caplog.text
