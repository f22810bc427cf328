"""Configuration loading utilities."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .models import LimitConfig

CONFIG_DIR = Path(os.environ.get("GEMINIFLOW_CONFIG_DIR", Path.home() / ".config" / "geminiflow"))
CONFIG_FILE = CONFIG_DIR / "config.json"

AUTH_METHODS = ("google-account", "api-key")

MINUTE_MS = 60_000
DAY_MS = 86_400_000


@dataclass(slots=True)
class GeminiCredentials:
    """Holds Gemini authentication settings."""

    api_key: str = ""
    auth_method: str = "google-account"


@dataclass(slots=True)
class AppConfig:
    """Top-level application configuration."""

    creds: GeminiCredentials = field(default_factory=GeminiCredentials)
    root_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-1.5-pro"
    temperature: Optional[float] = None
    max_output_tokens: int = 8192
    requests_per_minute: int = 60
    requests_per_day: int = 1000
    timeout: float = 60.0

    @classmethod
    def load(cls, override: Optional[Dict[str, Any]] = None) -> "AppConfig":
        """Load config from disk/.env, applying overrides."""

        _inject_dotenv()

        data: Dict[str, Any] = {}
        if CONFIG_FILE.exists():
            with CONFIG_FILE.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        if override:
            data.update(override)

        defaults = _config_defaults()

        creds_data = data.get("creds", {})
        env_creds = _credentials_from_environment()
        creds_payload = {**creds_data, **env_creds}
        config = cls(
            creds=GeminiCredentials(**creds_payload) if creds_payload else GeminiCredentials(),
            root_url=data.get("root_url", defaults["root_url"]),
            model=os.environ.get("GEMINI_MODEL") or data.get("model", defaults["model"]),
            temperature=data.get("temperature", defaults["temperature"]),
            max_output_tokens=data.get("max_output_tokens", defaults["max_output_tokens"]),
            requests_per_minute=data.get("requests_per_minute", defaults["requests_per_minute"]),
            requests_per_day=data.get("requests_per_day", defaults["requests_per_day"]),
            timeout=data.get("timeout", defaults["timeout"]),
        )
        return config

    def short_limit(self) -> LimitConfig:
        return LimitConfig(max_requests=self.requests_per_minute, window_ms=MINUTE_MS)

    def long_limit(self) -> LimitConfig:
        return LimitConfig(max_requests=self.requests_per_day, window_ms=DAY_MS)

    def save(self) -> None:
        """Persist configuration to disk."""

        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        payload = {
            "creds": _filter_empty(_asdict(self.creds)),
            "root_url": self.root_url,
            "model": self.model,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "requests_per_minute": self.requests_per_minute,
            "requests_per_day": self.requests_per_day,
            "timeout": self.timeout,
        }
        with CONFIG_FILE.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)


def _config_defaults() -> Dict[str, Any]:
    template = AppConfig()
    return _asdict(template)


def _dotenv_path() -> Path:
    return Path(os.environ.get("GEMINIFLOW_ENV_FILE", Path.cwd() / ".env"))


def _asdict(instance: Any) -> Dict[str, Any]:
    return {field.name: getattr(instance, field.name) for field in fields(instance)}


def _credentials_from_environment() -> Dict[str, str]:
    env = os.environ
    payload = {
        "api_key": env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY", ""),
        "auth_method": env.get("GEMINI_AUTH_METHOD", ""),
    }
    return _filter_empty(payload)


def _filter_empty(mapping: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in mapping.items() if value}


def _inject_dotenv() -> None:
    dotenv_file = _dotenv_path()
    if not dotenv_file.exists():
        return
    with dotenv_file.open("r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "=" not in stripped:
                continue
            key, _, raw_value = stripped.partition("=")
            key = key.strip()
            value = raw_value.strip()
            if (value.startswith("\"") and value.endswith("\"")) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]
            os.environ.setdefault(key, value.strip())
