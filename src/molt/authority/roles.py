"""Role registry — grant, revocation and endorsement history per context.

Role grants and revocations are governance events supplied by an
external identity collaborator. They are kept as closed-open intervals
[granted_at, revoked_at) and never deleted: revoking a role closes its
interval, it does not erase the fact that the role was held. That
history is what lets a former role holder testify about decisions made
while they held it.

Endorsements are the explicit community input that lifts an
established subject to authority-eligible standing.

Constitutional invariants enforced:
- At most one open grant per (actor, context, role).
- A revocation can never precede the grant it closes.
- Standing is not touched by any operation here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class RoleGrant:
    """One held-role interval. revoked_at None means still held."""
    actor_id: str
    context_id: str
    role: str
    granted_at: datetime
    revoked_at: Optional[datetime] = None

    def active_at(self, at_time: datetime) -> bool:
        if at_time < self.granted_at:
            return False
        return self.revoked_at is None or at_time < self.revoked_at

    def covers(self, moment: datetime, slack: timedelta = timedelta(0)) -> bool:
        """Whether the interval, widened by `slack`, contains `moment`."""
        if moment < self.granted_at - slack:
            return False
        return self.revoked_at is None or moment < self.revoked_at + slack


@dataclass(frozen=True)
class Endorsement:
    actor_id: str
    context_id: Optional[str]
    endorser_id: str
    endorsed_at: datetime
    note: str = ""


class RoleRegistry:
    """History of role intervals and endorsements.

    Thread-safety: this class is not thread-safe. The caller must
    synchronise access if used from multiple threads.
    """

    def __init__(self) -> None:
        self._grants: list[RoleGrant] = []
        self._endorsements: list[Endorsement] = []

    def grant(
        self,
        actor_id: str,
        context_id: str,
        role: str,
        granted_at: datetime,
    ) -> RoleGrant:
        """Open a role interval.

        Raises ValueError if an interval for the same role is still open.
        """
        if not actor_id.strip() or not context_id.strip() or not role.strip():
            raise ValueError("Role grant needs actor, context and role")
        if self._open_grant(actor_id, context_id, role) is not None:
            raise ValueError(
                f"{actor_id} already holds {role} in {context_id}"
            )
        grant = RoleGrant(
            actor_id=actor_id,
            context_id=context_id,
            role=role,
            granted_at=granted_at,
        )
        self._grants.append(grant)
        return grant

    def revoke(
        self,
        actor_id: str,
        context_id: str,
        role: str,
        revoked_at: datetime,
    ) -> RoleGrant:
        """Close the open interval for a role.

        Raises ValueError if the role is not held or the revocation
        would precede the grant.
        """
        current = self._open_grant(actor_id, context_id, role)
        if current is None:
            raise ValueError(f"{actor_id} does not hold {role} in {context_id}")
        if revoked_at < current.granted_at:
            raise ValueError("Revocation cannot precede the grant it closes")
        closed = RoleGrant(
            actor_id=current.actor_id,
            context_id=current.context_id,
            role=current.role,
            granted_at=current.granted_at,
            revoked_at=revoked_at,
        )
        self._grants[self._grants.index(current)] = closed
        return closed

    def history(
        self,
        actor_id: str,
        context_id: Optional[str] = None,
    ) -> list[RoleGrant]:
        """Every interval the actor has held, oldest first."""
        found = [
            g for g in self._grants
            if g.actor_id == actor_id
            and (context_id is None or g.context_id == context_id)
        ]
        return sorted(found, key=lambda g: (g.granted_at, g.role))

    def active_grants(
        self,
        actor_id: str,
        context_id: str,
        at_time: datetime,
    ) -> list[RoleGrant]:
        return [g for g in self.history(actor_id, context_id) if g.active_at(at_time)]

    def holders_covering(
        self,
        context_id: str,
        moment: datetime,
        slack: timedelta = timedelta(0),
    ) -> list[RoleGrant]:
        """Grants in a context whose interval contains `moment`."""
        return [
            g for g in self._grants
            if g.context_id == context_id and g.covers(moment, slack)
        ]

    def _open_grant(
        self, actor_id: str, context_id: str, role: str,
    ) -> Optional[RoleGrant]:
        for g in self._grants:
            if (
                g.actor_id == actor_id
                and g.context_id == context_id
                and g.role == role
                and g.revoked_at is None
            ):
                return g
        return None

    # ------------------------------------------------------------------
    # Endorsements
    # ------------------------------------------------------------------

    def record_endorsement(
        self,
        actor_id: str,
        context_id: Optional[str],
        endorser_id: str,
        endorsed_at: datetime,
        note: str = "",
    ) -> Endorsement:
        if actor_id == endorser_id:
            raise ValueError("An actor cannot endorse themselves")
        endorsement = Endorsement(
            actor_id=actor_id,
            context_id=context_id,
            endorser_id=endorser_id,
            endorsed_at=endorsed_at,
            note=note,
        )
        self._endorsements.append(endorsement)
        return endorsement

    def is_endorsed(
        self,
        actor_id: str,
        context_id: Optional[str],
        at_time: datetime,
    ) -> bool:
        """An endorsement in the context (or any, when context is None) by at_time."""
        return any(
            e.actor_id == actor_id
            and e.endorsed_at <= at_time
            and (context_id is None or e.context_id == context_id)
            for e in self._endorsements
        )

    @property
    def grant_count(self) -> int:
        return len(self._grants)
