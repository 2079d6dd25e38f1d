"""Environment resolution and enums for autopilot configuration."""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

# ---------------------------------------------------------------------------
# Env file resolution
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parents[2]


PROJECT_ROOT = _find_project_root()


def _resolve_env_file() -> Path:
    env_file = os.getenv("ENV", ".env")
    candidates = []
    if env_file:
        if not env_file.startswith("."):
            candidates.append(f".{env_file}")
        candidates.append(env_file)
    else:
        candidates.append(".env")

    for candidate in candidates:
        path = Path(candidate)
        if not path.is_absolute():
            path = PROJECT_ROOT / candidate
        if path.exists():
            return path

    return PROJECT_ROOT / ".env"


ENV_FILE = _resolve_env_file()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RunMode(str, Enum):
    """Named run profiles.

    OBSERVER: read-only intelligence gathering, logs opportunities.
    GUARDED: turns today's observer opportunities into pending proposals.
    TUNING: analyze-only threshold recommendations.
    DAILY: decide + execute content actions under rate limits.
    WEEKLY: learning loop, clones winning patterns.
    """

    OBSERVER = "observer"
    GUARDED = "guarded"
    TUNING = "tuning"
    DAILY = "daily"
    WEEKLY = "weekly"

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


class ActionType(str, Enum):
    CREATE = "CREATE"
    REWRITE = "REWRITE"
    EXPAND = "EXPAND"
    FREEZE = "FREEZE"
    CLONE = "CLONE"
    PROPOSE = "PROPOSE"

    @property
    def rate_category(self) -> str | None:
        """Rate-limiter category consulted before dispatching this action."""
        return _RATE_CATEGORIES[self]


_RATE_CATEGORIES = {
    ActionType.CREATE: "create",
    ActionType.REWRITE: "rewrite",
    ActionType.EXPAND: "expand",
    ActionType.FREEZE: None,
    ActionType.CLONE: "clone",
    ActionType.PROPOSE: "proposals",
}
