"""Policy resolver — loads engine_params.json and runtime_policy.json
and exposes every runtime decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import enum
import json
from datetime import timedelta
from pathlib import Path
from typing import Any

from molt.models.standing import Methodology


class Capability(str, enum.Enum):
    """Transitions an actor may be authorised to perform in a context."""
    ISSUE_ACTION = "issue_action"
    SOFT_REVERSE = "soft_reverse"
    HARD_REVERSE = "hard_reverse"
    RESOLVE_APPEAL = "resolve_appeal"
    CLOSE_WINDOW = "close_window"
    FILE_TESTIMONY = "file_testimony"
    FILE_HISTORICAL_TESTIMONY = "file_historical_testimony"


# Capabilities that only a current role grant confers.
ROLE_GATED_CAPABILITIES: frozenset[Capability] = frozenset({
    Capability.ISSUE_ACTION,
    Capability.SOFT_REVERSE,
    Capability.HARD_REVERSE,
    Capability.RESOLVE_APPEAL,
    Capability.CLOSE_WINDOW,
})


class AppealConflictPolicy(str, enum.Enum):
    """How competing terminal decisions on one action are ordered."""
    MOST_RECENT = "most_recent"
    MOST_AUTHORITATIVE = "most_authoritative"


class PolicyResolver:
    """Loads and resolves all engine and runtime policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        methodology = resolver.methodology()
        window = resolver.testimony_window_duration()
    """

    def __init__(self, params: dict[str, Any], policy: dict[str, Any]) -> None:
        self._params = params
        self._policy = policy
        self._validate_versions()
        self._methodologies = {
            mid: _build_methodology(mid, raw)
            for mid, raw in self._params["methodologies"].items()
        }
        if self._params["default_methodology"] not in self._methodologies:
            raise ValueError(
                f"default_methodology {self._params['default_methodology']!r} "
                f"is not defined in methodologies"
            )

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        params = _load_json(config_dir / "engine_params.json")
        policy = _load_json(config_dir / "runtime_policy.json")
        return cls(params, policy)

    def _validate_versions(self) -> None:
        if "version" not in self._params:
            raise ValueError("engine_params.json missing version")
        if "version" not in self._policy:
            raise ValueError("runtime_policy.json missing version")

    # ------------------------------------------------------------------
    # Standing methodologies
    # ------------------------------------------------------------------

    def methodology(self, methodology_id: str | None = None) -> Methodology:
        """Return a methodology by id, or the default one."""
        mid = methodology_id or self._params["default_methodology"]
        found = self._methodologies.get(mid)
        if found is None:
            raise ValueError(f"Unknown methodology: {mid}")
        return found

    def methodology_ids(self) -> list[str]:
        return sorted(self._methodologies)

    # ------------------------------------------------------------------
    # Testimony windows
    # ------------------------------------------------------------------

    def testimony_window_duration(self) -> timedelta:
        return timedelta(hours=self._params["testimony_window"]["default_hours"])

    def window_trigger_kinds(self) -> set[str]:
        """Action kinds that open a testimony window on their own ref."""
        return set(self._params["testimony_window"]["trigger_kinds"])

    def hard_reversal_opens_window(self) -> bool:
        return bool(self._params["testimony_window"]["hard_reversal_opens_window"])

    # ------------------------------------------------------------------
    # Deferral of unresolved references
    # ------------------------------------------------------------------

    def deferral_config(self) -> tuple[timedelta, timedelta, timedelta]:
        """Return (base_backoff, max_backoff, deferral_window)."""
        d = self._params["deferral"]
        return (
            timedelta(seconds=d["base_backoff_seconds"]),
            timedelta(seconds=d["max_backoff_seconds"]),
            timedelta(hours=d["window_hours"]),
        )

    # ------------------------------------------------------------------
    # Derivation limits
    # ------------------------------------------------------------------

    def max_reference_depth(self) -> int:
        return self._params["derivation"]["max_reference_depth"]

    def historical_overlap_slack(self) -> timedelta:
        return timedelta(
            days=self._params["historical_involvement"]["overlap_slack_days"],
        )

    # ------------------------------------------------------------------
    # Roles and authority
    # ------------------------------------------------------------------

    def role_names(self) -> set[str]:
        return set(self._policy["roles"])

    def role_capabilities(self, role: str) -> set[Capability]:
        """Capabilities a role confers. Unknown roles confer nothing."""
        raw = self._policy["roles"].get(role)
        if raw is None:
            return set()
        return {Capability(c) for c in raw}

    def role_precedence(self, role: str) -> int:
        return int(self._policy["role_precedence"].get(role, 0))

    def appeal_conflict_policy(self) -> AppealConflictPolicy:
        return AppealConflictPolicy(self._policy["appeal_conflict_policy"])

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def standing_page_size(self) -> int:
        return self._policy["query"]["standing_page_size"]

    def standing_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self._policy["query"]["standing_cache_ttl_seconds"])

    def mod_actions_limit(self) -> int:
        return self._policy["query"]["mod_actions_limit"]

    def feed_limits(self) -> tuple[int, int]:
        """(default, maximum) page size for submolt feeds."""
        query = self._policy["query"]
        return query["feed_default_limit"], query["feed_max_limit"]

    def hot_ranking(self) -> tuple[float, float]:
        """(gravity, offset in hours) for the hot feed sort."""
        query = self._policy["query"]
        return float(query["hot_gravity"]), float(query["hot_offset_hours"])

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def accepted_collections(self) -> set[str]:
        return set(self._policy["collections"])


def _build_methodology(methodology_id: str, raw: dict[str, Any]) -> Methodology:
    tiers = raw["tier_thresholds"]
    corroboration = raw["corroboration"]
    if raw["recency_half_life_days"] <= 0:
        raise ValueError(
            f"Methodology {methodology_id}: half-life must be positive"
        )
    return Methodology(
        methodology_id=methodology_id,
        description=raw["description"],
        category_values={k: float(v) for k, v in raw["category_values"].items()},
        recency_half_life_days=float(raw["recency_half_life_days"]),
        confidence_base=float(raw["confidence_base"]),
        neutral_phi=float(raw["neutral_phi"]),
        emerging_min=int(tiers["emerging_min"]),
        established_min=int(tiers["established_min"]),
        corroboration_min_witnesses=int(corroboration["min_independent_witnesses"]),
        high_standing_phi=float(corroboration["high_standing_phi"]),
    )


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
