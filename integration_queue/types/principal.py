"""
Principals and capability checks.

Authorization is passed explicitly into queue operations as a Principal
argument rather than read from request-scoped state.
"""

from dataclasses import dataclass

from integration_queue.constants import (
    CRON_CAPABILITIES,
    ROLE_CAPABILITIES,
    Capability,
    PrincipalKind,
    Role,
)
from integration_queue.errors import AuthorizationError


@dataclass(frozen=True)
class Principal:
    """
    The caller on whose behalf an operation runs.

    Users are scoped to one tenant; the cron principal is not.
    """

    kind: PrincipalKind
    subject: str
    role: Role | None = None
    tenant_id: str | None = None

    @classmethod
    def cron(cls) -> "Principal":
        """Principal for scheduled, secret-authenticated triggers."""
        return cls(kind=PrincipalKind.CRON, subject="cron")

    @classmethod
    def user(cls, subject: str, role: Role, tenant_id: str) -> "Principal":
        return cls(kind=PrincipalKind.USER, subject=subject, role=role, tenant_id=tenant_id)

    @property
    def capabilities(self) -> frozenset[Capability]:
        if self.kind == PrincipalKind.CRON:
            return CRON_CAPABILITIES
        if self.role is None:
            return frozenset()
        return ROLE_CAPABILITIES.get(self.role, frozenset())

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def authorize(
    principal: Principal,
    capability: Capability,
    tenant_id: str | None = None,
) -> None:
    """
    Check that a principal may perform an operation on a tenant.

    Raises:
        AuthorizationError: If the capability is missing or the user
            belongs to another tenant.
    """
    if not principal.can(capability):
        raise AuthorizationError(principal.subject, capability.value)
    if (
        tenant_id is not None
        and principal.kind == PrincipalKind.USER
        and principal.tenant_id != tenant_id
    ):
        raise AuthorizationError(principal.subject, f"{capability.value} on tenant {tenant_id}")
