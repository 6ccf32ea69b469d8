"""
Per-run settings and preferences

Settings are integers clamped to safe ranges; anything missing or invalid in
the stored plan state falls back to the configured defaults. Preferences
carry the approval flag and per-review model overrides.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from config import settings as app_settings


def clamp_int(value: Any, minimum: int, maximum: int, fallback: int) -> int:
    """Clamp an integer-like value into [minimum, maximum]; fallback on junk."""
    if isinstance(value, bool):
        return fallback
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(minimum, min(maximum, number))


@dataclass(frozen=True)
class RunSettings:
    """Immutable per-run limits, carried through every checkpoint"""
    max_steps: int = 12
    max_step_attempts: int = 2
    max_replan_calls: int = 2
    replan_every_steps: int = 2
    max_self_checks: int = 4
    loop_guard_threshold: int = 2
    loop_backoff_base_ms: int = 2000
    loop_backoff_max_ms: int = 12000

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# (min, max) per field
SETTINGS_BOUNDS = {
    "max_steps": (1, 20),
    "max_step_attempts": (1, 5),
    "max_replan_calls": (0, 6),
    "replan_every_steps": (1, 10),
    "max_self_checks": (0, 8),
    "loop_guard_threshold": (1, 5),
    "loop_backoff_base_ms": (250, 20000),
    "loop_backoff_max_ms": (1000, 60000),
}


def default_run_settings() -> RunSettings:
    """Defaults from the application configuration, already clamped."""
    raw = {
        "max_steps": app_settings.agent_max_steps,
        "max_step_attempts": app_settings.agent_max_step_attempts,
        "max_replan_calls": app_settings.agent_max_replan_calls,
        "replan_every_steps": app_settings.agent_replan_every_steps,
        "max_self_checks": app_settings.agent_max_self_checks,
        "loop_guard_threshold": app_settings.agent_loop_guard_threshold,
        "loop_backoff_base_ms": app_settings.agent_loop_backoff_base_ms,
        "loop_backoff_max_ms": app_settings.agent_loop_backoff_max_ms,
    }
    baseline = RunSettings()
    values = {}
    for name, (low, high) in SETTINGS_BOUNDS.items():
        values[name] = clamp_int(raw[name], low, high, getattr(baseline, name))
    return RunSettings(**values)


def resolve_run_settings(plan_state: Optional[Dict[str, Any]]) -> RunSettings:
    """
    Read `settings` out of a stored plan state.

    Args:
        plan_state: the run's plan state document (may be None)

    Returns:
        RunSettings: clamped settings
    """
    defaults = default_run_settings()
    raw = {}
    if isinstance(plan_state, dict) and isinstance(plan_state.get("settings"), dict):
        raw = plan_state["settings"]
    values = {}
    for name, (low, high) in SETTINGS_BOUNDS.items():
        fallback = getattr(defaults, name)
        values[name] = clamp_int(raw.get(name, fallback), low, high, fallback)
    return RunSettings(**values)


@dataclass
class RunPreferences:
    ignore_robots_txt: bool = False
    require_human_approval: bool = False
    planner_model: Optional[str] = None
    self_check_model: Optional[str] = None
    loop_guard_model: Optional[str] = None
    approval_gate_model: Optional[str] = None
    memory_summarization_model: Optional[str] = None
    memory_validation_model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clean_model(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_run_preferences(plan_state: Optional[Dict[str, Any]]) -> RunPreferences:
    raw: Dict[str, Any] = {}
    if isinstance(plan_state, dict) and isinstance(plan_state.get("preferences"), dict):
        raw = plan_state["preferences"]
    return RunPreferences(
        ignore_robots_txt=bool(raw.get("ignore_robots_txt", False)),
        require_human_approval=bool(raw.get("require_human_approval", False)),
        planner_model=_clean_model(raw.get("planner_model")),
        self_check_model=_clean_model(raw.get("self_check_model")),
        loop_guard_model=_clean_model(raw.get("loop_guard_model")),
        approval_gate_model=_clean_model(raw.get("approval_gate_model")),
        memory_summarization_model=_clean_model(raw.get("memory_summarization_model")),
        memory_validation_model=_clean_model(raw.get("memory_validation_model")),
    )


@dataclass(frozen=True)
class ModelSelection:
    """Which model serves which review type for one run"""
    resolved: str
    planner: str
    self_check: str
    loop_guard: str
    memory_summarization: str
    approval_gate: Optional[str] = None
    memory_validation: Optional[str] = None

    @classmethod
    def from_preferences(
        cls,
        preferences: RunPreferences,
        run_model: Optional[str] = None,
        default_model: Optional[str] = None,
    ) -> "ModelSelection":
        resolved = _clean_model(run_model) or default_model or app_settings.llm_model
        planner = preferences.planner_model or resolved
        return cls(
            resolved=resolved,
            planner=planner,
            self_check=preferences.self_check_model or planner,
            loop_guard=preferences.loop_guard_model or planner,
            memory_summarization=preferences.memory_summarization_model or resolved,
            approval_gate=preferences.approval_gate_model,
            memory_validation=preferences.memory_validation_model,
        )
