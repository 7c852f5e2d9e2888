"""
Identity Directory Module

The identity collaborator the engine asks "who currently holds this role?"
when resolving ROLE approvers and "is this actor elevated?" when cancelling.
Authentication itself lives outside the engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType


@dataclass
class Principal(StorageRecord):
    """A user (or service account) that can act on workflows"""
    display_name: str
    email: str = ""
    roles: List[str] = field(default_factory=list)
    is_active: bool = True


class IdentityDirectory(ABC):
    """Read-only view of principals and their roles"""

    @abstractmethod
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        """Get a principal by ID"""
        pass

    @abstractmethod
    def principals_with_role(self, role: str) -> Set[str]:
        """IDs of all active principals currently holding the role"""
        pass

    def has_role(self, principal_id: str, role: str) -> bool:
        principal = self.get_principal(principal_id)
        return bool(principal and principal.is_active and role in principal.roles)

    def has_any_role(self, principal_id: str, roles: Iterable[str]) -> bool:
        return any(self.has_role(principal_id, role) for role in roles)


class InMemoryIdentityDirectory(IdentityDirectory):
    """Storage-backed directory used by the standalone service and tests"""

    TABLE = "principals"

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit

    def register(self, principal_id: str, display_name: str, roles: Optional[List[str]] = None,
                 email: str = "", registered_by: str = "system") -> Principal:
        """Create or replace a principal"""
        now = datetime.now(timezone.utc)
        existing = self.get_principal(principal_id)

        principal = Principal(
            id=principal_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            display_name=display_name,
            email=email,
            roles=list(roles or [])
        )
        self.storage.save(self.TABLE, principal_id, principal.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.PRINCIPAL_UPDATED if existing else AuditEventType.PRINCIPAL_REGISTERED,
                'principal',
                principal_id,
                {'roles': principal.roles},
                registered_by
            )

        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        data = self.storage.load(self.TABLE, principal_id)
        if not data:
            return None
        return Principal.from_dict(data)

    def list_principals(self, role: Optional[str] = None) -> List[Principal]:
        principals = [Principal.from_dict(data) for data in self.storage.load_all(self.TABLE)]
        if role:
            principals = [p for p in principals if role in p.roles]
        return sorted(principals, key=lambda p: p.id)

    def principals_with_role(self, role: str) -> Set[str]:
        return {p.id for p in self.list_principals(role) if p.is_active}

    def assign_role(self, principal_id: str, role: str) -> bool:
        """Grant a role; returns False for unknown principals"""
        principal = self.get_principal(principal_id)
        if not principal:
            return False
        if role not in principal.roles:
            principal.roles.append(role)
            self._save(principal)
        return True

    def remove_role(self, principal_id: str, role: str) -> bool:
        principal = self.get_principal(principal_id)
        if not principal:
            return False
        if role in principal.roles:
            principal.roles.remove(role)
            self._save(principal)
        return True

    def deactivate(self, principal_id: str) -> bool:
        principal = self.get_principal(principal_id)
        if not principal:
            return False
        principal.is_active = False
        self._save(principal)
        return True

    def _save(self, principal: Principal) -> None:
        principal.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, principal.id, principal.to_dict())
        if self.audit:
            self.audit.log_event(
                AuditEventType.PRINCIPAL_UPDATED,
                'principal',
                principal.id,
                {'roles': principal.roles, 'is_active': principal.is_active},
                'system'
            )
