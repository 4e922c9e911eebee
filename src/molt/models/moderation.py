"""Moderation state models — the derived lifecycle of a moderation action.

There is no stored status field. An action's state is recomputed from
the appeals, resolutions, reversals and testimony windows that
reference it:

    PENDING → ACTIVE → APPEALED → UNDER_REVIEW → ACTIVE (upheld/modified)
                                               → REVERSED (overturned)
                                               → UNDER_REVIEW (remanded)
    ACTIVE → EXPIRED (expiresAt passed, no reversal)
    ACTIVE → REVERSED (soft reversal, or hard reversal after testimony)

INDETERMINATE is the degraded answer for reference cycles or chains
deeper than the configured limit.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from molt.models.records import AppealResolution, RecordRef, format_timestamp


class ActionState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    APPEALED = "appealed"
    UNDER_REVIEW = "under_review"
    EXPIRED = "expired"
    REVERSED = "reversed"
    INDETERMINATE = "indeterminate"


class AppealBranchStatus(str, enum.Enum):
    """Where a single appeal branch stands, independent of the others."""
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    UPHELD = "upheld"
    OVERTURNED = "overturned"
    MODIFIED = "modified"


@dataclass(frozen=True)
class AppealBranch:
    """One appeal against an action and the resolution chain hanging off it.

    legacy is True for appeals filed as a modAction with action=appeal.
    """
    appeal_ref: RecordRef
    appellant_id: str
    created_at: datetime
    status: AppealBranchStatus
    resolutions: tuple[AppealResolution, ...] = ()
    category: Optional[str] = None
    legacy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "appeal": self.appeal_ref.uri,
            "appellant": self.appellant_id,
            "category": self.category,
            "status": self.status.value,
            "legacy": self.legacy,
            "created_at": format_timestamp(self.created_at),
            "resolutions": [r.ref.uri for r in self.resolutions],
        }


@dataclass(frozen=True)
class ActionStateView:
    """Derived state of a moderation action plus its provenance.

    binding_ref is the record whose decision currently drives the state
    (a resolution or a reverse action), if any. version is the newest
    created_at among contributing records.
    """
    action_ref: RecordRef
    state: ActionState
    computed_at: datetime
    appeals: list[AppealBranch] = field(default_factory=list)
    resolutions: list[AppealResolution] = field(default_factory=list)
    reversals: list[RecordRef] = field(default_factory=list)
    binding_ref: Optional[RecordRef] = None
    modification: Optional[str] = None
    final: bool = False
    version: Optional[datetime] = None
    contributing_records: int = 0
    degraded_reason: Optional[str] = None

    @property
    def in_effect(self) -> bool:
        """Whether the action currently constrains its subject."""
        return self.state in (
            ActionState.ACTIVE,
            ActionState.APPEALED,
            ActionState.UNDER_REVIEW,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action_ref.uri,
            "state": self.state.value,
            "appeals": [a.to_dict() for a in self.appeals],
            "resolutions": [
                {
                    "uri": r.ref.uri,
                    "appeal": r.appeal.uri,
                    "outcome": r.outcome.value,
                    "resolver": r.resolver_id,
                    "final_decision": r.final_decision,
                    "created_at": format_timestamp(r.created_at),
                }
                for r in self.resolutions
            ],
            "reversals": [r.uri for r in self.reversals],
            "binding": self.binding_ref.uri if self.binding_ref else None,
            "modification": self.modification,
            "final": self.final,
            "version": format_timestamp(self.version),
            "contributing_records": self.contributing_records,
            "computed_at": format_timestamp(self.computed_at),
            "degraded_reason": self.degraded_reason,
        }
