"""Common domain models for geminiflow."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class RateLimitConfigError(ValueError):
    """Raised when a limit configuration is not a pair of positive integers."""


class AgentMode(str, Enum):
    ARCHITECT = "architect"
    CODER = "coder"
    TESTER = "tester"
    DEBUGGER = "debugger"
    SECURITY = "security"
    DOCUMENTATION = "documentation"
    INTEGRATOR = "integrator"
    MONITOR = "monitor"
    OPTIMIZER = "optimizer"
    ASK = "ask"
    DEVOPS = "devops"
    TUTORIAL = "tutorial"
    DATABASE = "database"
    SPECIFICATION = "specification"
    MCP = "mcp"
    ORCHESTRATOR = "orchestrator"
    DESIGNER = "designer"


MODE_TEMPERATURES: Dict[AgentMode, float] = {
    AgentMode.ARCHITECT: 0.7,
    AgentMode.CODER: 0.3,
    AgentMode.TESTER: 0.2,
    AgentMode.DEBUGGER: 0.1,
    AgentMode.SECURITY: 0.2,
    AgentMode.DOCUMENTATION: 0.5,
    AgentMode.INTEGRATOR: 0.4,
    AgentMode.MONITOR: 0.2,
    AgentMode.OPTIMIZER: 0.3,
    AgentMode.ASK: 0.8,
    AgentMode.DEVOPS: 0.3,
    AgentMode.TUTORIAL: 0.6,
    AgentMode.DATABASE: 0.2,
    AgentMode.SPECIFICATION: 0.4,
    AgentMode.MCP: 0.3,
    AgentMode.ORCHESTRATOR: 0.5,
    AgentMode.DESIGNER: 0.8,
}


def _require_positive_int(name: str, value: object) -> None:
    # bool is an int subclass; True would silently mean 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise RateLimitConfigError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise RateLimitConfigError(f"{name} must be > 0, got {value}")


@dataclass(frozen=True, slots=True)
class LimitConfig:
    """Quota for one window: at most ``max_requests`` per ``window_ms``."""

    max_requests: int
    window_ms: int

    def __post_init__(self) -> None:
        _require_positive_int("max_requests", self.max_requests)
        _require_positive_int("window_ms", self.window_ms)

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """Read-only view of one gate's window."""

    used: int
    remaining: int
    reset_at: float


@dataclass(frozen=True, slots=True)
class CombinedUsage:
    """Snapshots for both tiers of a composite limiter."""

    short: UsageSnapshot
    long: UsageSnapshot


RATE_LIMIT_PRESETS: Dict[str, LimitConfig] = {
    "personal": LimitConfig(max_requests=60, window_ms=60_000),
    "daily": LimitConfig(max_requests=1000, window_ms=86_400_000),
}


@dataclass(frozen=True, slots=True)
class Attachment:
    """Inline file sent alongside a prompt (image, PDF, ...)."""

    mime_type: str
    data: bytes
