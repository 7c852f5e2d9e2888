"""
SLA / Escalation Sweeper

Periodic pass over persisted IN_PROGRESS instances, independent of any
request: flags instances past their expected completion as overdue, sends a
one-time reminder shortly before the deadline, and widens a step's approvers
to its escalation targets once it has been open too long.

Each change is written with the same compare-and-swap as interactive actions,
so a sweep racing an approval never overwrites the approval's advance. Every
flag is checked against freshly loaded state, which makes repeated sweeps
idempotent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import threading

from .audit import AuditEventType
from .events import NotificationEventType
from .templates import NotificationRule
from .errors import ConflictError, WorkflowError, retry_on_conflict
from .logging_config import log_action
from .workflows import InstanceStatus, WorkflowInstanceRuntime


logger = logging.getLogger("approval_engine.sweeper")

SYSTEM_ACTOR = "system.sla_sweeper"


@dataclass
class SweepReport:
    """What one sweep pass changed"""
    started_at: datetime
    checked: int = 0
    overdue: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)
    reminded: List[str] = field(default_factory=list)
    conflicted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'checked': self.checked,
            'overdue': list(self.overdue),
            'escalated': list(self.escalated),
            'reminded': list(self.reminded),
            'conflicted': list(self.conflicted),
            'failed': list(self.failed)
        }


class SLASweeper:
    """Runs SLA checks on a fixed interval in a daemon thread"""

    def __init__(self, runtime: WorkflowInstanceRuntime, interval_seconds: int = 300,
                 max_conflict_retries: int = 3):
        self.runtime = runtime
        self.interval_seconds = interval_seconds
        self.max_conflict_retries = max(1, max_conflict_retries)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if not self.enabled or self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sla-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"SLA sweeper started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("SLA sweep failed; retrying on next interval")

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """One synchronous pass over all open instances"""
        now = now or self.runtime.clock()
        report = SweepReport(started_at=now)

        for instance in self.runtime.list_instances(status=InstanceStatus.IN_PROGRESS):
            report.checked += 1
            try:
                outcome = retry_on_conflict(
                    lambda: self._sweep_instance(instance.id, now),
                    attempts=self.max_conflict_retries
                )
            except ConflictError:
                report.conflicted.append(instance.id)
                continue
            except WorkflowError as e:
                logger.error(f"SLA check failed for instance {instance.id}: {e}")
                report.failed.append(instance.id)
                continue

            if 'overdue' in outcome:
                report.overdue.append(instance.id)
            if 'escalated' in outcome:
                report.escalated.append(instance.id)
            if 'reminded' in outcome:
                report.reminded.append(instance.id)

        if report.overdue or report.escalated or report.reminded or report.conflicted:
            log_action(logger, "info", "SLA sweep finished", user_id=SYSTEM_ACTOR,
                       action="sla_sweep", extra=report.to_dict())
        return report

    def _sweep_instance(self, instance_id: str, now: datetime) -> List[str]:
        instance = self.runtime.get_instance(instance_id)
        execution = instance.current_execution()
        if execution is None:
            return []

        template = self.runtime.templates.get(instance.template_id)
        reminder_rule = template.notifications.before_sla
        sla = instance.sla
        deadline = sla.expected_completion_at
        expected_version = instance.version
        outcome = []

        if deadline and now > deadline and not sla.is_overdue:
            sla.is_overdue = True
            outcome.append('overdue')

        if (deadline and not sla.is_overdue and sla.reminder_sent_at is None
                and reminder_rule.enabled and reminder_rule.hours_before_sla is not None
                and now >= deadline - timedelta(hours=reminder_rule.hours_before_sla)):
            sla.reminder_sent_at = now
            outcome.append('reminded')

        escalation = execution.auto_escalate
        targets = sorted(set(escalation.escalate_to))
        if (escalation.enabled and targets and execution.escalated_at is None
                and now - execution.started_at > timedelta(hours=escalation.after_hours)):
            execution.escalated_at = now
            execution.escalated_to = targets
            sla.escalated = True
            sla.escalated_at = now
            sla.escalated_to = sorted(set(sla.escalated_to) | set(targets))
            outcome.append('escalated')

        if not outcome:
            return outcome

        self.runtime.save(instance, expected_version)

        if 'overdue' in outcome:
            self.runtime.audit.log_event(
                AuditEventType.SLA_OVERDUE, 'workflow_instance', instance.id,
                {'expected_completion_at': deadline}, SYSTEM_ACTOR
            )
            log_action(logger, "info", "Instance overdue", user_id=SYSTEM_ACTOR,
                       action="sla_overdue", resource=instance.id,
                       extra={'expected_completion_at': deadline.isoformat()})
            # overdue always notifies, to the current assignees unless the template says otherwise
            overdue_rule = reminder_rule if reminder_rule.enabled else NotificationRule(
                enabled=True, template_id=reminder_rule.template_id
            )
            self.runtime.publisher.announce(
                NotificationEventType.BEFORE_SLA, overdue_rule, instance,
                {'reason': 'overdue', 'expected_completion_at': deadline.isoformat()}
            )

        if 'reminded' in outcome:
            self.runtime.audit.log_event(
                AuditEventType.SLA_REMINDER, 'workflow_instance', instance.id,
                {'expected_completion_at': deadline}, SYSTEM_ACTOR
            )
            self.runtime.publisher.announce(
                NotificationEventType.BEFORE_SLA, reminder_rule, instance,
                {'reason': 'approaching', 'expected_completion_at': deadline.isoformat(),
                 'hours_before_sla': reminder_rule.hours_before_sla}
            )

        if 'escalated' in outcome:
            self.runtime.audit.log_event(
                AuditEventType.STEP_ESCALATED, 'workflow_instance', instance.id,
                {'step_order': execution.step_order, 'escalated_to': targets}, SYSTEM_ACTOR
            )
            log_action(logger, "info", f"Step {execution.step_order} escalated",
                       user_id=SYSTEM_ACTOR, action="escalate_step", resource=instance.id,
                       extra={'escalated_to': targets})
            self.runtime.publisher.announce_escalation(
                instance, targets,
                {'step_order': execution.step_order,
                 'hours_open': round((now - execution.started_at).total_seconds() / 3600, 2)}
            )

        return outcome
