"""Rate-limited wrapper around the Gemini generateContent REST endpoints."""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from ..core.config import AUTH_METHODS, AppConfig, GeminiCredentials
from ..core.models import MODE_TEMPERATURES, AgentMode, Attachment, CombinedUsage
from ..core.rate_limit import CompositeLimiter

logger = logging.getLogger(__name__)

HEALTH_CHECK_PROMPT = "Hello"


class GeminiError(RuntimeError):
    """Raised when a Gemini request fails or returns nothing usable."""


class GeminiConfigError(ValueError):
    """Raised when the client cannot be configured for the chosen auth method."""


def _resolve_api_key(creds: GeminiCredentials) -> str:
    method = creds.auth_method or "google-account"
    if method not in AUTH_METHODS:
        raise GeminiConfigError(f"Unknown auth method {method!r}; expected one of {', '.join(AUTH_METHODS)}")
    if method == "api-key":
        if not creds.api_key:
            raise GeminiConfigError(
                "API key is required when using api-key authentication method. Set GEMINI_API_KEY environment variable."
            )
        return creds.api_key
    api_key = creds.api_key or os.environ.get("GEMINI_API_KEY", "")
    if not api_key:
        logger.warning("No API key provided. Ensure you are authenticated via Google account or set GEMINI_API_KEY")
    return api_key


def _text_parts(payload: Dict[str, Any]) -> List[str]:
    texts: List[str] = []
    for candidate in payload.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text")
            if text:
                texts.append(text)
        # only the first candidate is used, as the SDK's response.text() does
        break
    return texts


class GeminiClient:
    """Sends prompts to Gemini through a minute/day composite limiter.

    Every call to :meth:`execute` or :meth:`execute_multimodal` consumes one
    permit on each tier, whether or not the request succeeds.
    """

    def __init__(
        self,
        config: AppConfig,
        limiter: Optional[CompositeLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._api_key = _resolve_api_key(config.creds)
        self._limiter = limiter or CompositeLimiter.from_limits(config.short_limit(), config.long_limit())
        self._client = httpx.AsyncClient(base_url=config.root_url, timeout=config.timeout, transport=transport)

    @property
    def limiter(self) -> CompositeLimiter:
        return self._limiter

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        return headers

    def _path(self, method: str) -> str:
        return f"/models/{self._config.model}:{method}"

    def mode_temperature(self, mode: AgentMode | str) -> float:
        """Return the sampling temperature for an agent mode."""

        try:
            return MODE_TEMPERATURES[AgentMode(mode)]
        except (KeyError, ValueError):
            pass
        if self._config.temperature is not None:
            return self._config.temperature
        return 0.5

    def _request_body(self, parts: List[Dict[str, Any]], mode: AgentMode | str) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.mode_temperature(mode),
                "maxOutputTokens": self._config.max_output_tokens,
            },
        }

    async def _generate(self, body: Dict[str, Any], label: str) -> str:
        try:
            response = await self._client.post(self._path("generateContent"), json=body, headers=self._headers())
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise GeminiError(f"Gemini {label} failed: {exc}") from exc
        texts = _text_parts(payload)
        if not texts:
            reason = (payload.get("promptFeedback") or {}).get("blockReason", "empty response")
            raise GeminiError(f"Gemini {label} failed: {reason}")
        return "".join(texts)

    async def execute(self, prompt: str, mode: AgentMode | str) -> str:
        """Run a text prompt once both rate-limit tiers admit it."""

        body = self._request_body([{"text": prompt}], mode)
        return await self._limiter.execute(lambda: self._generate(body, "execution"))

    async def execute_multimodal(
        self,
        prompt: str,
        files: Sequence[Attachment],
        mode: AgentMode | str,
    ) -> str:
        """Run a prompt with inline attachments. Counts as a single request."""

        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for item in files:
            parts.append(
                {
                    "inlineData": {
                        "mimeType": item.mime_type,
                        "data": base64.b64encode(item.data).decode("ascii"),
                    }
                }
            )
        body = self._request_body(parts, mode)
        return await self._limiter.execute(lambda: self._generate(body, "multimodal execution"))

    async def stream_execute(self, prompt: str, mode: AgentMode | str) -> AsyncIterator[str]:
        """Yield response text as it streams in.

        The permit is taken before the request opens; the stream itself may
        outlive the window it was admitted in.
        """

        await self._limiter.acquire()
        body = self._request_body([{"text": prompt}], mode)
        try:
            async with self._client.stream(
                "POST",
                self._path("streamGenerateContent"),
                params={"alt": "sse"},
                json=body,
                headers=self._headers(),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = json.loads(line[len("data:"):].strip())
                    text = "".join(_text_parts(chunk))
                    if text:
                        yield text
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise GeminiError(f"Gemini stream execution failed: {exc}") from exc

    def get_rate_limit_status(self) -> CombinedUsage:
        return self._limiter.get_stats()

    async def check_health(self) -> bool:
        """Send a tiny prompt if quota allows; never waits for a permit."""

        if not self._limiter.try_acquire():
            logger.warning("Gemini health check skipped: rate limit exhausted")
            return False
        body = {
            "contents": [{"role": "user", "parts": [{"text": HEALTH_CHECK_PROMPT}]}],
            "generationConfig": {"maxOutputTokens": 10},
        }
        try:
            response = await self._client.post(self._path("generateContent"), json=body, headers=self._headers())
            response.raise_for_status()
            return bool(response.json())
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            logger.error("Gemini health check failed: %s", exc)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
