"""
Shared fixtures: in-memory approval system on a controllable clock, with a
small directory of principals.
"""

import pytest
from datetime import datetime, timezone, timedelta

from approval_engine.config import ApprovalEngineConfig
from approval_engine.system import ApprovalSystem


T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock the tests move by hand"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Configuration with in-memory storage and no background sweeper"""
    return ApprovalEngineConfig(database_url="memory", sweep_interval_seconds=0)


@pytest.fixture
def system(config, clock):
    """Approval system with reviewers, final approvers, an admin and a manager"""
    system = ApprovalSystem(config=config, clock=clock)
    directory = system.identity
    directory.register("alice", "Alice Martin", roles=["reviewer"])
    directory.register("bob", "Bob Diallo", roles=["reviewer"])
    directory.register("carol", "Carol Nguyen", roles=["final_approver"])
    directory.register("dave", "Dave Okafor", roles=["final_approver"])
    directory.register("erin", "Erin Rossi", roles=["admin"])
    directory.register("frank", "Frank Weber", roles=[])
    directory.register("gina", "Gina Park", roles=["compliance_manager"])
    yield system
    system.shutdown()


@pytest.fixture
def runtime(system):
    return system.runtime


@pytest.fixture
def received(system):
    """Every notification event the engine publishes, in order"""
    events = []
    system.dispatcher.subscribe_all(events.append)
    return events


def users_step(order, name, users, **options):
    """Step definition dict approved by a fixed list of users"""
    step = {
        'order': order,
        'name': name,
        'approver_spec': {'kind': 'SPECIFIC_USERS', 'users': list(users)}
    }
    step.update(options)
    return step


@pytest.fixture
def make_template(system):
    """Create and activate a template from step dicts"""
    def _make(steps, name="Doc Approval", applicable_type="REPORT", notifications=None,
              activate=True, created_by="erin"):
        spec = {
            'name': name,
            'applicable_type': applicable_type,
            'steps': steps
        }
        if notifications:
            spec['notifications'] = notifications
        template = system.templates.create(spec, created_by=created_by)
        if activate:
            template = system.templates.activate(template.id, created_by)
        return template
    return _make


@pytest.fixture
def doc_approval(make_template):
    """Review (alice or bob) then Final (carol), 24h each"""
    return make_template([
        users_step(1, "Review", ["alice", "bob"], sla_hours=24),
        users_step(2, "Final", ["carol"], sla_hours=24),
    ])
