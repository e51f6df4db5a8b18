"""
OpenRouter backend.

OpenRouter provides unified access to many LLM models through a single
OpenAI-compatible API.
"""

import logging
import time
from typing import Any

import httpx

from ...errors import TransientAgentError
from ..protocol import BackendResponse
from .base import BackendAuthenticationError, BaseBackend

logger = logging.getLogger(__name__)

BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterBackend(BaseBackend):
    """Backend for models served through OpenRouter."""

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: int = 120,
        max_retries: int = 3,
        base_url: str = BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model, api_key, max_retries=max_retries)
        self.timeout = timeout
        self.base_url = base_url
        self._transport = transport
        self._pricing = {"prompt": 0.0, "completion": 0.0}

    @property
    def name(self) -> str:
        return f"openrouter:{self.model}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": "RMRI Research Engine",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def verify(self) -> None:
        """Verify API key with a minimal request."""
        async with self._client(10) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": "hi"}],
                    "max_tokens": 1,
                },
            )
        if response.status_code in (401, 403):
            raise BackendAuthenticationError("OpenRouter", "OPENROUTER_API_KEY")
        response.raise_for_status()

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client(self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise TimeoutError(str(e)) from e
        except httpx.TransportError as e:
            raise ConnectionError(str(e)) from e

        if response.status_code in (401, 403):
            raise BackendAuthenticationError("OpenRouter", "OPENROUTER_API_KEY")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAgentError(
                f"OpenRouter API unavailable ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code != 200:
            raise RuntimeError(f"OpenRouter API error ({response.status_code}): {response.text}")
        return response.json()

    async def complete(self, system_prompt: str, user_prompt: str) -> BackendResponse:
        start_time = time.time()
        result = await self._with_retry(
            self._post,
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": 0.2,
            },
        )

        usage = result.get("usage", {})
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)

        choices = result.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        if not isinstance(content, str):
            content = ""

        cost = (input_tokens / 1_000_000) * self._pricing["prompt"] + (
            output_tokens / 1_000_000
        ) * self._pricing["completion"]

        return BackendResponse(
            text=content,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            duration_seconds=time.time() - start_time,
        )
