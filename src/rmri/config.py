"""
Configuration loading and validation for rmri.

Two layers:
- RunConfig: per-run options submitted with POST /start (camelCase or snake_case)
- EngineSettings: process settings loaded from rmri.toml
"""

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RankingWeights(BaseModel):
    """Weights for the four gap criteria. Normalized to sum to 1 when applied."""

    importance: float = Field(default=0.25, ge=0.0)
    novelty: float = Field(default=0.25, ge=0.0)
    feasibility: float = Field(default=0.25, ge=0.0)
    impact: float = Field(default=0.25, ge=0.0)

    def normalized(self) -> dict[str, float]:
        """Return weights as a dict summing to 1."""
        raw = self.model_dump()
        total = sum(raw.values())
        return {name: value / total for name, value in raw.items()}

    @model_validator(mode="after")
    def validate_not_all_zero(self) -> "RankingWeights":
        """Reject a weight set that sums to zero."""
        if self.importance + self.novelty + self.feasibility + self.impact <= 0:
            raise ValueError("At least one ranking weight must be positive")
        return self


class RunConfig(BaseModel):
    """Configuration of a single orchestration run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_depth: int = Field(default=3, ge=1, le=10, alias="maxDepth")
    max_agents: int = Field(default=20, ge=1, le=500, alias="maxAgents")
    timeout_ms: int = Field(default=300_000, ge=1, alias="timeout")
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0, alias="confidenceThreshold")
    enable_critic: bool = Field(default=True, alias="enableCritic")
    convergence_threshold: float = Field(default=0.7, ge=0.0, alias="convergenceThreshold")

    agent_timeout_seconds: float = Field(default=60.0, gt=0, alias="agentTimeoutSeconds")
    max_retries: int = Field(default=3, ge=1, le=10, alias="maxRetries")
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0, alias="retryBackoffSeconds")
    ranking_weights: RankingWeights = Field(default_factory=RankingWeights, alias="rankingWeights")
    top_n: int = Field(default=10, ge=1, alias="topN")
    paper_selection: Literal["all", "gap_linked"] = Field(default="all", alias="paperSelection")
    focus_top_k: int = Field(default=5, ge=1, alias="focusTopK")


class StorageConfig(BaseModel):
    """Storage configuration."""

    db_path: Path = Path(".rmri/rmri.db")


class EngineConfig(BaseModel):
    """Engine-wide limits."""

    max_payload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    strict_append: bool = False
    recent_log_count: int = Field(default=10, ge=1)


class BackendConfig(BaseModel):
    """LLM backend used by agents. 'heuristic' runs without a model."""

    provider: Literal["heuristic", "anthropic", "openrouter"] = "heuristic"
    model: str = "claude-sonnet-4-20250514"
    api_key_env: str | None = None
    timeout_seconds: int = 120
    max_retries: int = 3

    def get_api_key(self) -> str:
        """
        Read the backend API key from the environment.

        Raises:
            ValueError: If the variable is unset or empty
        """
        env_name = self.api_key_env or {
            "anthropic": "ANTHROPIC_API_KEY",
            "openrouter": "OPENROUTER_API_KEY",
        }.get(self.provider, "")
        api_key = os.environ.get(env_name) if env_name else None
        if not api_key:
            raise ValueError(
                f"API key not found in environment: {env_name or '<unset>'} "
                f"(required for {self.provider}:{self.model})"
            )
        return api_key


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: Path | None = None


class EngineSettings(BaseModel):
    """Complete process configuration loaded from rmri.toml."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    defaults: RunConfig = Field(default_factory=RunConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path) -> EngineSettings:
    """
    Load engine settings from a TOML file.

    Args:
        config_path: Path to rmri.toml

    Returns:
        Validated EngineSettings

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        config_data = tomllib.load(f)

    try:
        settings = EngineSettings(**config_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    return settings


def create_default_config(
    output_path: Path,
    provider: str = "heuristic",
    model: str = "claude-sonnet-4-20250514",
    db_path: str = ".rmri/rmri.db",
) -> None:
    """
    Write a starter rmri.toml.

    Args:
        output_path: Where to write the file
        provider: Backend provider ("heuristic", "anthropic", "openrouter")
        model: Backend model identifier
        db_path: SQLite database location
    """
    template = f'''[storage]
db_path = "{db_path}"

[engine]
max_payload_bytes = 10485760  # 10 MiB per context write
strict_append = false  # true: append without a prior version is an error

[defaults]
maxDepth = 3
maxAgents = 20
timeout = 300000  # ms without agent progress before the run fails
confidenceThreshold = 0.7
enableCritic = true
convergenceThreshold = 0.7
paperSelection = "all"  # or "gap_linked"

[backend]
provider = "{provider}"
model = "{model}"
timeout_seconds = 120
max_retries = 3

[server]
host = "127.0.0.1"
port = 8000

[logging]
level = "INFO"
'''

    output_path.write_text(template, encoding="utf-8")
