"""Service container for dependency wiring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from ..core.config import AppConfig
from ..core.rate_limit import CompositeLimiter
from .gemini_client import GeminiClient


@dataclass(slots=True)
class ServiceContainer:
    """Aggregates all runtime services for the CLI."""

    config: AppConfig
    limiter: CompositeLimiter
    client: GeminiClient

    @classmethod
    def build(
        cls,
        config: Optional[AppConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ServiceContainer":
        cfg = config or AppConfig.load()
        limiter = CompositeLimiter.from_limits(cfg.short_limit(), cfg.long_limit())
        client = GeminiClient(cfg, limiter=limiter, transport=transport)
        return cls(config=cfg, limiter=limiter, client=client)

    async def aclose(self) -> None:
        """Close any underlying resources."""

        await self.client.aclose()
