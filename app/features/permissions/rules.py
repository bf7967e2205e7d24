"""
Role inheritance and delegation policy rules.

Rules are data, not code: operators reshape the role tree through the admin
API. Both rule sets sit behind small repository protocols so a persistent
implementation can replace the in-memory one without touching call sites.
"""
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from app.features.permissions.keys import PermissionKey


@dataclass(frozen=True)
class PermissionCondition:
    """Satisfied when some active member of the retreat holds the permission."""
    resource: str
    operation: str
    required: bool = True

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.resource, self.operation)


@dataclass(frozen=True)
class InheritanceRule:
    """Directed edge parent_role -> child_role in the role graph."""
    parent_role: str
    child_role: str
    inherit_permissions: bool = True
    inherit_delegation: bool = True
    conditions: tuple[PermissionCondition, ...] = ()


@dataclass(frozen=True)
class DelegationRule:
    """Which permissions a holder of from_role may lend to a holder of to_role."""
    from_role: str
    to_role: str
    permissions: frozenset[PermissionKey] = field(default_factory=frozenset)
    max_duration_hours: Optional[int] = None
    requires_approval: bool = False


class InheritanceRuleRepository(Protocol):
    def list(self) -> List[InheritanceRule]: ...

    def children_of(self, parent_role: str) -> List[InheritanceRule]: ...

    def add(self, rule: InheritanceRule) -> None: ...

    def remove(self, parent_role: str, child_role: str) -> bool: ...


class DelegationRuleRepository(Protocol):
    def list(self) -> List[DelegationRule]: ...

    def find(self, from_role: str, to_role: str) -> Optional[DelegationRule]: ...

    def add(self, rule: DelegationRule) -> None: ...

    def remove(self, from_role: str, to_role: str) -> bool: ...


class InMemoryInheritanceRuleRepository:
    def __init__(self, rules: Iterable[InheritanceRule] = ()):
        self._rules: List[InheritanceRule] = list(rules)
        self._lock = threading.Lock()

    def list(self) -> List[InheritanceRule]:
        with self._lock:
            return list(self._rules)

    def children_of(self, parent_role: str) -> List[InheritanceRule]:
        with self._lock:
            return [rule for rule in self._rules if rule.parent_role == parent_role]

    def add(self, rule: InheritanceRule) -> None:
        """Add or replace the edge (parent_role, child_role)."""
        with self._lock:
            self._rules = [
                existing for existing in self._rules
                if (existing.parent_role, existing.child_role) != (rule.parent_role, rule.child_role)
            ]
            self._rules.append(rule)

    def remove(self, parent_role: str, child_role: str) -> bool:
        with self._lock:
            before = len(self._rules)
            self._rules = [
                rule for rule in self._rules
                if (rule.parent_role, rule.child_role) != (parent_role, child_role)
            ]
            return len(self._rules) < before


class InMemoryDelegationRuleRepository:
    def __init__(self, rules: Iterable[DelegationRule] = ()):
        self._rules: List[DelegationRule] = list(rules)
        self._lock = threading.Lock()

    def list(self) -> List[DelegationRule]:
        with self._lock:
            return list(self._rules)

    def find(self, from_role: str, to_role: str) -> Optional[DelegationRule]:
        with self._lock:
            for rule in self._rules:
                if rule.from_role == from_role and rule.to_role == to_role:
                    return rule
        return None

    def add(self, rule: DelegationRule) -> None:
        """Add or replace the rule for (from_role, to_role)."""
        with self._lock:
            self._rules = [
                existing for existing in self._rules
                if (existing.from_role, existing.to_role) != (rule.from_role, rule.to_role)
            ]
            self._rules.append(rule)

    def remove(self, from_role: str, to_role: str) -> bool:
        with self._lock:
            before = len(self._rules)
            self._rules = [
                rule for rule in self._rules
                if (rule.from_role, rule.to_role) != (from_role, to_role)
            ]
            return len(self._rules) < before


# ============================================================================
# Default retreat role hierarchy
# ============================================================================

def _keys(*values: str) -> frozenset[PermissionKey]:
    return frozenset(PermissionKey.parse(value) for value in values)


DEFAULT_INHERITANCE_RULES = (
    InheritanceRule(
        "admin", "treasurer",
        conditions=(PermissionCondition("payment", "manage"),),
    ),
    InheritanceRule(
        "admin", "logistics",
        conditions=(PermissionCondition("retreatInventory", "manage"),),
    ),
    InheritanceRule("admin", "regular_server"),
    InheritanceRule("treasurer", "regular_server", inherit_permissions=False),
    InheritanceRule("logistics", "regular_server", inherit_permissions=False),
    InheritanceRule("communications", "regular_server", inherit_permissions=False),
)

DEFAULT_DELEGATION_RULES = (
    DelegationRule(
        "admin", "treasurer",
        _keys("payment:read", "payment:create", "payment:update"),
        max_duration_hours=168,
    ),
    DelegationRule(
        "admin", "logistics",
        _keys("retreatInventory:read", "retreatInventory:create", "retreatInventory:update"),
        max_duration_hours=168,
    ),
    DelegationRule(
        "admin", "communications",
        _keys("messageTemplate:read", "messageTemplate:create", "messageTemplate:update"),
        max_duration_hours=168,
    ),
    DelegationRule(
        "treasurer", "regular_server", _keys("payment:read"),
        max_duration_hours=24, requires_approval=True,
    ),
    DelegationRule(
        "logistics", "regular_server", _keys("retreatInventory:read"),
        max_duration_hours=24, requires_approval=True,
    ),
    DelegationRule(
        "communications", "regular_server", _keys("messageTemplate:read"),
        max_duration_hours=24, requires_approval=True,
    ),
)
