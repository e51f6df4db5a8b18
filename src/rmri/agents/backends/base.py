"""
Base backend utilities shared across all LLM backends.

Provides:
- Retry logic with exponential backoff
- Cost calculation
- JSON extraction from model replies
"""

import json
import logging
import re
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...errors import BackendUnavailableError, TransientAgentError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackendAuthenticationError(Exception):
    """Raised when a backend fails due to an invalid or missing API key."""

    def __init__(self, provider: str, api_key_env: str):
        self.provider = provider
        self.api_key_env = api_key_env
        super().__init__(
            f"{provider} authentication failed. "
            f"Check that {api_key_env} is set to a valid API key."
        )


RETRYABLE_BACKEND_ERRORS = (ConnectionError, TimeoutError, TransientAgentError)


class BaseBackend:
    """Base class with shared backend utilities."""

    # Model pricing (per 1M tokens)
    PRICING = {
        "claude-opus-4-20250514": {"input": 15.0, "output": 75.0},
        "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
        "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
        "default": {"input": 1.0, "output": 3.0},
    }

    def __init__(self, model: str, api_key: str | None = None, max_retries: int = 3):
        self.model = model
        self.api_key = api_key
        self.max_retries = max_retries

    async def _with_retry(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Execute func with exponential backoff on connection problems.

        Raises:
            BackendUnavailableError: Retryable errors persisted through every attempt
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RETRYABLE_BACKEND_ERRORS),
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                reraise=True,
            ):
                with attempt:
                    logger.debug(f"Attempt {attempt.retry_state.attempt_number}/{self.max_retries}")
                    return await func(*args, **kwargs)
        except RETRYABLE_BACKEND_ERRORS as e:
            raise BackendUnavailableError(
                f"{type(e).__name__} after {self.max_retries} attempts: {e}"
            ) from e

        raise RuntimeError("Retry logic failed unexpectedly")

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        pricing = self.PRICING.get(self.model, self.PRICING["default"])
        cost = (input_tokens / 1_000_000) * pricing["input"] + (
            output_tokens / 1_000_000
        ) * pricing["output"]
        logger.debug(
            f"Cost calculation: {input_tokens:,} input + {output_tokens:,} output = ${cost:.6f}"
        )
        return cost


def extract_json_from_text(text: str) -> dict[str, Any] | None:
    """
    Extract JSON object from text (handles markdown code blocks).

    Args:
        text: Text potentially containing JSON

    Returns:
        Parsed JSON dict or None if not found
    """
    json_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group(1))
        except json.JSONDecodeError:
            pass

    json_match = re.search(r"\{.*\}", text, re.DOTALL)
    if json_match:
        try:
            parsed = json.loads(json_match.group(0))
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass

    return None
