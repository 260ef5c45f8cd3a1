"""
congregate.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for the non-secret knobs of a deployment: community
name, publication sweep interval, where the client keeps its local state,
and per-action rate-limit overrides.  Secrets (``DATABASE_URL``) come from
the environment.

Usage::

    from congregate.config import load_config

    cfg = load_config()                 # reads ./config.yaml by default
    print(cfg.community_name)           # "Grace Fellowship"
    guard = RateGuard(store, cfg.rate_limit_rules())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from congregate.engine.rate_guard import DEFAULT_RATE_LIMITS, RateLimitRule


@dataclass(frozen=True, slots=True)
class GovernanceConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    community_name: str

    # Seconds between scheduled-announcement publication sweeps
    publish_interval_seconds: float = 30.0

    # Page size for announcement lists
    announcement_list_limit: int = 50

    # JSON file backing the client's LocalStore; None keeps it in memory
    local_store_path: str | None = None

    # action → rule, overriding DEFAULT_RATE_LIMITS entry by entry
    rate_limits: dict[str, RateLimitRule] = field(default_factory=dict)

    def rate_limit_rules(self) -> dict[str, RateLimitRule]:
        return {**DEFAULT_RATE_LIMITS, **self.rate_limits}


def _parse_rule(action: str, raw: Any) -> RateLimitRule:
    if not isinstance(raw, dict):
        raise ValueError(f"rate_limits.{action} must be a mapping")
    return RateLimitRule(
        max_attempts=int(raw["max_attempts"]),
        window_seconds=float(raw["window_seconds"]),
        cooldown_seconds=float(raw.get("cooldown_seconds", 0)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> GovernanceConfig:
    """Read *path* and return a :class:`GovernanceConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a rate-limit override is malformed.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    rate_limits = {
        action: _parse_rule(action, rule)
        for action, rule in (raw.get("rate_limits") or {}).items()
    }

    return GovernanceConfig(
        community_name=raw["community_name"],
        publish_interval_seconds=float(raw.get("publish_interval_seconds", 30)),
        announcement_list_limit=int(raw.get("announcement_list_limit", 50)),
        local_store_path=raw.get("local_store_path") or None,
        rate_limits=rate_limits,
    )
