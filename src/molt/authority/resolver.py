"""Authority resolver — who may perform which transition, and when.

Authority is derived solely from role intervals active at the moment a
transition is *executed*. Callers pass that moment explicitly; no
timestamp embedded in the record being authorised is ever trusted, so
a record signed while its author was in role but submitted after the
role was revoked carries no authority.

Standing plays no part here. The two are composed only at the
permission boundary (see authority.ghost).
"""

from __future__ import annotations

from datetime import datetime

from molt.authority.roles import RoleRegistry
from molt.policy.resolver import Capability, PolicyResolver


class AuthorityResolver:
    """Pure queries over the role registry."""

    def __init__(self, resolver: PolicyResolver, roles: RoleRegistry) -> None:
        self._resolver = resolver
        self._roles = roles

    def has_authority(
        self,
        actor_id: str,
        context_id: str,
        capability: Capability,
        at_time: datetime,
    ) -> bool:
        return capability in self.capabilities_at(actor_id, context_id, at_time)

    def capabilities_at(
        self,
        actor_id: str,
        context_id: str,
        at_time: datetime,
    ) -> set[Capability]:
        caps: set[Capability] = set()
        for grant in self._roles.active_grants(actor_id, context_id, at_time):
            caps |= self._resolver.role_capabilities(grant.role)
        return caps

    def roles_at(
        self,
        actor_id: str,
        context_id: str,
        at_time: datetime,
    ) -> list[str]:
        return sorted(
            g.role for g in self._roles.active_grants(actor_id, context_id, at_time)
        )

    def rank_at(self, actor_id: str, context_id: str, at_time: datetime) -> int:
        """Highest role precedence held at at_time; 0 when no role is held."""
        return max(
            (self._resolver.role_precedence(r)
             for r in self.roles_at(actor_id, context_id, at_time)),
            default=0,
        )
