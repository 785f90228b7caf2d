"""Per-workspace safety policy models and YAML loader.

Workspaces can tighten the account-protection defaults (daily pull limit,
inter-page delay, page size) through a YAML file keyed by workspace id.
Accounts that are still warming up get a reduced daily limit derived from
how long they have been active.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# (days_active upper bound, daily limit, recommendation)
_WARMUP_STEPS: list[tuple[int, int, str]] = [
    (3, 50, "New account warmup: start slow with 50 searches/day"),
    (7, 150, "Early warmup: gradually increasing to 150 searches/day"),
    (14, 300, "Mid warmup: building to 300 searches/day"),
    (21, 500, "Late warmup: approaching 500 searches/day"),
    (30, 750, "Final warmup: nearly at full capacity with 750 searches/day"),
]
_FULL_CAPACITY = (1000, "Fully warmed up: maximum safe limit of 1000 searches/day")


class SafetyPolicy(BaseModel):
    """Account-protection limits for a single workspace."""

    daily_limit: int = Field(default=1000, ge=0)
    min_delay_ms: int = Field(default=25000, ge=0)
    max_delay_ms: int = Field(default=45000, ge=0)
    page_size: int = Field(default=10, ge=1)
    warmup_mode: bool = False
    days_active: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_delay_range(self) -> "SafetyPolicy":
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError("max_delay_ms must be >= min_delay_ms")
        return self

    def effective_daily_limit(self) -> int:
        """Daily limit after applying the warm-up schedule, if enabled."""
        if self.warmup_mode and self.days_active is not None:
            return min(self.daily_limit, warmup_schedule(self.days_active)[0])
        return self.daily_limit


def warmup_schedule(days_active: int) -> tuple[int, str]:
    """Return ``(daily_limit, recommendation)`` for an account's age in days."""
    for upper_bound, limit, recommendation in _WARMUP_STEPS:
        if days_active < upper_bound:
            return limit, recommendation
    return _FULL_CAPACITY


def load_safety_policies(
    yaml_path: str,
    default: SafetyPolicy | None = None,
) -> dict[str, SafetyPolicy]:
    """Parse a safety policies YAML file into typed SafetyPolicy objects.

    Args:
        yaml_path: Path to the YAML configuration file.
        default: Policy used for the ``default`` key when the file omits it.

    Returns:
        A dict mapping workspace ids (and "default") to SafetyPolicy instances.
        If the file is missing or malformed, returns just the default policy.
    """
    fallback = default or SafetyPolicy()
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Safety policies file not found at %s, using built-in defaults", yaml_path)
        return {"default": fallback}

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse safety policies YAML at %s: %s", yaml_path, exc)
        return {"default": fallback}

    if not isinstance(raw, dict) or "workspaces" not in raw:
        logger.warning("Safety policies YAML missing 'workspaces' key, using built-in defaults")
        return {"default": fallback}

    policies: dict[str, SafetyPolicy] = {}
    for workspace_id, config in (raw["workspaces"] or {}).items():
        try:
            policies[str(workspace_id)] = SafetyPolicy.model_validate(config or {})
        except Exception as exc:
            logger.error("Invalid safety policy for workspace '%s': %s, skipping", workspace_id, exc)

    if "default" not in policies:
        policies["default"] = fallback

    return policies


def policy_for(policies: dict[str, SafetyPolicy], workspace_id: str) -> SafetyPolicy:
    """Return the workspace's policy, falling back to ``default``."""
    return policies.get(workspace_id) or policies.get("default") or SafetyPolicy()
