"""LLM backends consulted by agents."""

import logging

from ...config import BackendConfig
from ..protocol import AgentBackend
from .anthropic import AnthropicBackend
from .base import BackendAuthenticationError, extract_json_from_text
from .openrouter import OpenRouterBackend

logger = logging.getLogger(__name__)


def create_backend(config: BackendConfig, provider: str | None = None) -> AgentBackend | None:
    """
    Build the backend described by config.

    Args:
        config: Backend settings
        provider: Overrides config.provider (e.g. per-run agentBackend)

    Returns:
        Backend instance, or None for the heuristic provider

    Raises:
        ValueError: Unknown provider or missing API key
    """
    provider = provider or config.provider
    if provider == "heuristic":
        return None

    if provider != config.provider:
        config = config.model_copy(update={"provider": provider, "api_key_env": None})

    if provider == "anthropic":
        backend: AgentBackend = AnthropicBackend(
            model=config.model,
            api_key=config.get_api_key(),
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
        )
    elif provider == "openrouter":
        backend = OpenRouterBackend(
            model=config.model,
            api_key=config.get_api_key(),
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
        )
    else:
        raise ValueError(f"Unknown backend provider: {provider}")

    logger.info(f"Using backend {backend.name}")
    return backend


__all__ = [
    "AnthropicBackend",
    "BackendAuthenticationError",
    "OpenRouterBackend",
    "create_backend",
    "extract_json_from_text",
]
