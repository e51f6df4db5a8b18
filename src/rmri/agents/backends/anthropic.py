"""Anthropic Claude backend."""

import logging
import time

import anthropic

from ...errors import TransientAgentError
from ..protocol import BackendResponse
from .base import BackendAuthenticationError, BaseBackend

logger = logging.getLogger(__name__)


class AnthropicBackend(BaseBackend):
    """Backend for Anthropic Claude models."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        timeout: int = 120,
        max_retries: int = 3,
        max_tokens: int = 2048,
    ):
        """
        Initialize Anthropic backend.

        Args:
            model: Model identifier
            api_key: API key
            timeout: Request timeout in seconds
            max_retries: Attempts for connection errors and rate limits
            max_tokens: Completion size limit
        """
        super().__init__(model, api_key, max_retries=max_retries)
        if not api_key:
            raise ValueError("api_key required for the Anthropic backend")
        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.timeout = timeout
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return f"anthropic:{self.model}"

    async def verify(self) -> None:
        """Verify the API key with a minimal request."""
        try:
            await self.client.messages.create(
                model=self.model,
                messages=[{"role": "user", "content": "hi"}],
                max_tokens=1,
            )
        except anthropic.AuthenticationError as e:
            raise BackendAuthenticationError("Anthropic", "ANTHROPIC_API_KEY") from e

    async def _create(self, system_prompt: str, user_prompt: str) -> anthropic.types.Message:
        try:
            return await self.client.messages.create(
                model=self.model,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            )
        except anthropic.AuthenticationError as e:
            raise BackendAuthenticationError("Anthropic", "ANTHROPIC_API_KEY") from e
        except (anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise TransientAgentError(f"Anthropic API unavailable: {e}") from e
        except anthropic.APITimeoutError as e:
            raise TimeoutError(str(e)) from e
        except anthropic.APIConnectionError as e:
            raise ConnectionError(str(e)) from e

    async def complete(self, system_prompt: str, user_prompt: str) -> BackendResponse:
        start_time = time.time()
        response = await self._with_retry(self._create, system_prompt, user_prompt)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens

        logger.debug(f"[{self.name}] {input_tokens} in / {output_tokens} out")

        return BackendResponse(
            text=text,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self._calculate_cost(input_tokens, output_tokens),
            duration_seconds=time.time() - start_time,
        )
