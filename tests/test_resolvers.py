"""
Test suite for approver resolution

Tests SPECIFIC_USERS, ROLE and DYNAMIC resolution, the built-in dynamic rules
and registration of custom rules.
"""

import pytest

from approval_engine.errors import ValidationError
from approval_engine.resolvers import (
    ApproverResolver, DynamicRuleRegistry, ResolutionContext, parse_rule
)
from approval_engine.templates import ApproverKind, ApproverSpec


@pytest.fixture
def resolver(system):
    return system.resolver


@pytest.fixture
def context():
    return ResolutionContext(
        entity_type="BUDGET_CHANGE",
        entity_id="bud-42",
        initiated_by="frank",
        entity_data={
            'owner_id': 'dave',
            'reviewers': ['alice', 'carol', None],
            'department': {'head': 'gina', 'approver_role': 'final_approver'},
            'amount': '125000.50'
        },
        template_id="tpl-1",
        template_created_by="erin",
        step_order=1
    )


def dynamic(rule):
    return ApproverSpec(kind=ApproverKind.DYNAMIC, dynamic_rule=rule)


class TestStaticResolution:
    """Test users and roles"""

    def test_specific_users(self, resolver, context):
        spec = ApproverSpec(kind=ApproverKind.SPECIFIC_USERS, users=["bob", "alice"])
        assert resolver.resolve(spec, context) == {"alice", "bob"}

    def test_role_holders(self, resolver, context):
        spec = ApproverSpec(kind=ApproverKind.ROLE, role="reviewer")
        assert resolver.resolve(spec, context) == {"alice", "bob"}

    def test_role_skips_inactive(self, system, resolver, context):
        """Test deactivated principals no longer resolve"""
        system.identity.deactivate("bob")
        spec = ApproverSpec(kind=ApproverKind.ROLE, role="reviewer")
        assert resolver.resolve(spec, context) == {"alice"}

    def test_role_is_point_in_time(self, system, resolver, context):
        spec = ApproverSpec(kind=ApproverKind.ROLE, role="reviewer")
        before = resolver.resolve(spec, context)
        system.identity.assign_role("frank", "reviewer")
        system.identity.remove_role("alice", "reviewer")

        assert before == {"alice", "bob"}
        assert resolver.resolve(spec, context) == {"bob", "frank"}


class TestBuiltinRules:
    """Test the vetted dynamic rules"""

    def test_initiator(self, resolver, context):
        assert resolver.resolve(dynamic("initiator"), context) == {"frank"}

    def test_template_owner(self, resolver, context):
        assert resolver.resolve(dynamic("template_owner"), context) == {"erin"}

    def test_entity_field(self, resolver, context):
        assert resolver.resolve(dynamic("entity_field:owner_id"), context) == {"dave"}
        assert resolver.resolve(dynamic("entity_field:department.head"), context) == {"gina"}
        assert resolver.resolve(dynamic("entity_field:reviewers"), context) == {"alice", "carol"}
        assert resolver.resolve(dynamic("entity_field:missing.path"), context) == set()

    def test_entity_role(self, resolver, context):
        rule = "entity_role:department.approver_role"
        assert resolver.resolve(dynamic(rule), context) == {"carol", "dave"}

    @pytest.mark.parametrize("amount,expected", [
        ('125000.50', {"carol", "dave"}),
        ('100000', {"alice", "bob"}),
        ('99.99', {"alice", "bob"}),
        ('n/a', set()),
    ])
    def test_amount_tier(self, resolver, context, amount, expected):
        """Test amounts above the threshold go to the senior role"""
        context.entity_data['amount'] = amount
        rule = "amount_tier:amount:100000:final_approver:reviewer"
        assert resolver.resolve(dynamic(rule), context) == expected

    @pytest.mark.parametrize("rule", ["entity_field", "entity_field:a:b", "amount_tier:amount:10"])
    def test_wrong_arity(self, resolver, context, rule):
        with pytest.raises(ValidationError):
            resolver.resolve(dynamic(rule), context)

    def test_unknown_rule(self, resolver, context):
        """Test rule strings are never evaluated as code"""
        with pytest.raises(ValidationError):
            resolver.resolve(dynamic("__import__('os').system('true')"), context)


class TestRuleRegistry:
    """Test registration of named rules"""

    def test_parse_rule(self):
        assert parse_rule("amount_tier: amount :10") == ("amount_tier", ["amount", "10"])
        assert parse_rule("initiator") == ("initiator", [])

    def test_builtins(self):
        registry = DynamicRuleRegistry()
        assert registry.names() == ["amount_tier", "entity_field", "entity_role",
                                    "initiator", "template_owner"]
        assert registry.has("entity_field:owner_id")
        assert not DynamicRuleRegistry(include_builtins=False).has("initiator")

    def test_register_custom_rule(self, system, context):
        registry = DynamicRuleRegistry(include_builtins=False)
        registry.register("department_head",
                          lambda args, ctx, identity: [ctx.entity_data['department']['head']])
        resolver = ApproverResolver(system.identity, registry)

        assert resolver.rule_exists("department_head")
        assert resolver.resolve(dynamic("department_head"), context) == {"gina"}

    @pytest.mark.parametrize("name", ["", "a:b"])
    def test_invalid_rule_names(self, name):
        with pytest.raises(ValueError):
            DynamicRuleRegistry().register(name, lambda args, ctx, identity: [])
