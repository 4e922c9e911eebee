"""Permission ghost resolver — voice without authority.

A permission ghost is an actor who keeps standing in a context after
losing the role that gave them authority there. The resolver composes
two independent inputs and never caches their join:

1. The authority resolver at the evaluation time. Role-gated
   capabilities are granted only if it says yes, which for a ghost it
   never does.
2. The role history. Filing testimony on the historical-involvement
   basis is granted when a past (or current) grant in the context
   covers the creation time of the action being testified about.

Ordinary testimony is open to any community member and always granted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from molt.authority.resolver import AuthorityResolver
from molt.authority.roles import RoleGrant, RoleRegistry
from molt.models.records import format_timestamp
from molt.policy.resolver import ROLE_GATED_CAPABILITIES, Capability, PolicyResolver


@dataclass(frozen=True)
class GhostAssessment:
    """Available transitions for an actor in a context at a moment."""
    actor_id: str
    context_id: str
    at_time: datetime
    granted: frozenset[Capability]
    denied: frozenset[Capability]
    covering_grants: tuple[RoleGrant, ...] = ()
    reasons: list[str] = field(default_factory=list)
    had_role: bool = False

    @property
    def is_ghost(self) -> bool:
        """Held a role here once, holds no decision authority now."""
        return self.had_role and not (self.granted & ROLE_GATED_CAPABILITIES)

    def allows(self, capability: Capability) -> bool:
        return capability in self.granted

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "context_id": self.context_id,
            "at_time": format_timestamp(self.at_time),
            "is_ghost": self.is_ghost,
            "granted": sorted(c.value for c in self.granted),
            "denied": sorted(c.value for c in self.denied),
            "covering_grants": [
                {
                    "role": g.role,
                    "granted_at": format_timestamp(g.granted_at),
                    "revoked_at": format_timestamp(g.revoked_at),
                }
                for g in self.covering_grants
            ],
            "reasons": list(self.reasons),
        }


class PermissionGhostResolver:

    def __init__(
        self,
        resolver: PolicyResolver,
        roles: RoleRegistry,
        authority: AuthorityResolver,
    ) -> None:
        self._resolver = resolver
        self._roles = roles
        self._authority = authority

    def assess(
        self,
        actor_id: str,
        context_id: str,
        at_time: datetime,
        referenced_at: Optional[datetime] = None,
    ) -> GhostAssessment:
        """Compute the transition set.

        referenced_at is the creation time of the action a historical
        testimony would speak to. Without it, historical testimony is
        denied.
        """
        granted: set[Capability] = {Capability.FILE_TESTIMONY}
        reasons: list[str] = []
        current = self._authority.capabilities_at(actor_id, context_id, at_time)
        for cap in sorted(ROLE_GATED_CAPABILITIES, key=lambda c: c.value):
            if cap in current:
                granted.add(cap)
            else:
                reasons.append(f"{cap.value}: no active role grants it at evaluation time")

        history = self._roles.history(actor_id, context_id)
        covering: tuple[RoleGrant, ...] = ()
        if referenced_at is None:
            reasons.append(
                f"{Capability.FILE_HISTORICAL_TESTIMONY.value}: no referenced action"
            )
        else:
            slack = self._resolver.historical_overlap_slack()
            covering = tuple(
                g for g in history
                if g.covers(referenced_at, slack) and g.granted_at <= at_time
            )
            if covering:
                granted.add(Capability.FILE_HISTORICAL_TESTIMONY)
            else:
                reasons.append(
                    f"{Capability.FILE_HISTORICAL_TESTIMONY.value}: no role held in "
                    f"{context_id} at {format_timestamp(referenced_at)}"
                )

        return GhostAssessment(
            actor_id=actor_id,
            context_id=context_id,
            at_time=at_time,
            granted=frozenset(granted),
            denied=frozenset(set(Capability) - granted),
            covering_grants=covering,
            reasons=reasons,
            had_role=bool(history),
        )
