"""
Approver Resolution Module

Turns a step's approver specification into a concrete set of principal IDs
at the moment the step starts. DYNAMIC specifications name a rule from a
registry of vetted resolver functions; rule strings are never evaluated as
code.

Rule syntax: ``name`` or ``name:arg1:arg2``, e.g. ``entity_field:owner_id``.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
import logging
import threading

from .identity import IdentityDirectory
from .templates import ApproverKind, ApproverSpec
from .errors import ValidationError


logger = logging.getLogger("approval_engine.resolvers")


@dataclass
class ResolutionContext:
    """Runtime facts a resolver may look at"""
    entity_type: str
    entity_id: str
    initiated_by: str
    entity_data: Dict[str, Any] = field(default_factory=dict)
    template_id: Optional[str] = None
    template_created_by: Optional[str] = None
    step_order: Optional[int] = None


RuleFunction = Callable[[List[str], ResolutionContext, IdentityDirectory], Iterable[str]]


def parse_rule(rule: str) -> Tuple[str, List[str]]:
    """Split ``name:arg1:arg2`` into the rule name and its arguments"""
    parts = [p.strip() for p in rule.strip().split(":")]
    return parts[0], parts[1:]


def _lookup(data: Dict[str, Any], path: str) -> Any:
    """Read a dotted path ("owner.id") from nested entity data"""
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


def _as_principals(value: Any) -> Set[str]:
    if value is None or value == "":
        return set()
    if isinstance(value, (list, tuple, set)):
        return {str(v) for v in value if v not in (None, "")}
    return {str(value)}


def _initiator(args, context, identity):
    return {context.initiated_by}


def _template_owner(args, context, identity):
    return _as_principals(context.template_created_by)


def _entity_field(args, context, identity):
    if len(args) != 1:
        raise ValidationError("entity_field takes exactly one argument: the field path")
    return _as_principals(_lookup(context.entity_data, args[0]))


def _entity_role(args, context, identity):
    """Holders of the role named in an entity field"""
    if len(args) != 1:
        raise ValidationError("entity_role takes exactly one argument: the field path")
    role = _lookup(context.entity_data, args[0])
    if not role:
        return set()
    return identity.principals_with_role(str(role))


def _amount_tier(args, context, identity):
    """
    Role chosen by comparing an amount field against a threshold:
    ``amount_tier:<field>:<threshold>:<role_above>:<role_at_or_below>``
    """
    if len(args) != 4:
        raise ValidationError("amount_tier takes field, threshold, role_above, role_at_or_below")
    field_path, threshold, role_above, role_below = args
    amount = _lookup(context.entity_data, field_path)
    try:
        above = Decimal(str(amount)) > Decimal(threshold)
    except (InvalidOperation, ValueError):
        logger.warning(f"amount_tier: non-numeric value {amount!r} for {field_path}")
        return set()
    return identity.principals_with_role(role_above if above else role_below)


class DynamicRuleRegistry:
    """Named, pre-vetted resolver functions selectable from templates"""

    def __init__(self, include_builtins: bool = True):
        self._rules: Dict[str, RuleFunction] = {}
        self._lock = threading.RLock()
        if include_builtins:
            self.register("initiator", _initiator)
            self.register("template_owner", _template_owner)
            self.register("entity_field", _entity_field)
            self.register("entity_role", _entity_role)
            self.register("amount_tier", _amount_tier)

    def register(self, name: str, function: RuleFunction) -> None:
        """Register (or replace) a rule under a name"""
        if not name or ":" in name:
            raise ValueError(f"Invalid rule name: {name!r}")
        with self._lock:
            self._rules[name] = function
            logger.debug(f"Registered dynamic approver rule '{name}'")

    def has(self, rule: str) -> bool:
        name, _ = parse_rule(rule)
        with self._lock:
            return name in self._rules

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._rules)

    def evaluate(self, rule: str, context: ResolutionContext,
                 identity: IdentityDirectory) -> Set[str]:
        name, args = parse_rule(rule)
        with self._lock:
            function = self._rules.get(name)
        if function is None:
            raise ValidationError(f"Unknown dynamic approver rule '{name}'", rule=rule)
        return {str(p) for p in function(args, context, identity)}


class ApproverResolver:
    """Resolves approver specifications to principal IDs"""

    def __init__(self, identity: IdentityDirectory, registry: Optional[DynamicRuleRegistry] = None):
        self.identity = identity
        self.registry = registry or DynamicRuleRegistry()

    def resolve(self, spec: ApproverSpec, context: ResolutionContext) -> Set[str]:
        """
        Resolve once, at step start. ROLE lookups are a point-in-time
        snapshot of the identity directory, not a live binding.
        """
        if spec.kind == ApproverKind.SPECIFIC_USERS:
            resolved = set(spec.users)
        elif spec.kind == ApproverKind.ROLE:
            resolved = set(self.identity.principals_with_role(spec.role))
        else:
            resolved = self.registry.evaluate(spec.dynamic_rule, context, self.identity)

        logger.debug(
            f"Resolved {spec.kind.value} approvers for {context.entity_type}:{context.entity_id} "
            f"step {context.step_order}: {sorted(resolved)}"
        )
        return resolved

    def rule_exists(self, rule: str) -> bool:
        return self.registry.has(rule)
