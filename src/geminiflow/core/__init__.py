"""Core utilities and models."""

from .config import AppConfig, GeminiCredentials
from .models import (
    RATE_LIMIT_PRESETS,
    AgentMode,
    Attachment,
    CombinedUsage,
    LimitConfig,
    RateLimitConfigError,
    UsageSnapshot,
)
from .rate_limit import AdmissionGate, CompositeLimiter, WindowTracker

__all__ = [
    "AppConfig",
    "GeminiCredentials",
    "RATE_LIMIT_PRESETS",
    "AgentMode",
    "Attachment",
    "CombinedUsage",
    "LimitConfig",
    "RateLimitConfigError",
    "UsageSnapshot",
    "AdmissionGate",
    "CompositeLimiter",
    "WindowTracker",
]
