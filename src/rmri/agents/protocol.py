"""
Protocol definitions for analysis agents.

This module defines the interfaces shared by micro, meso and meta agents and
by the optional LLM backends they consult.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config import RunConfig
from ..store.models import AgentKind, ContextSnapshot, ResultType


class Paper(BaseModel):
    """A paper submitted for analysis. Only title, abstract or text is required."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    doi: str | None = None
    title: str = ""
    abstract: str = ""
    text: str = Field(default="", alias="fullText")
    year: int | None = None
    authors: list[str] = Field(default_factory=list)
    venue: str | None = None
    citations: int = Field(default=0, alias="citationCount")
    keywords: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def use_content_as_text(cls, data: Any) -> Any:
        """Fall back to `content` when no full text is given."""
        if isinstance(data, dict) and not (data.get("fullText") or data.get("text")):
            content = data.get("content")
            if content:
                data = {**data, "fullText": content}
        return data

    @field_validator("title", "abstract", "text", mode="before")
    @classmethod
    def null_text_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("citations", mode="before")
    @classmethod
    def null_citations_as_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("authors", "keywords", mode="before")
    @classmethod
    def null_list_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def has_content(self) -> bool:
        return bool(self.title.strip() or self.abstract.strip() or self.text.strip())

    @property
    def paper_id(self) -> str:
        """Stable identifier: DOI, then id, then a slug of title and year."""
        if self.doi:
            return self.doi
        if self.id:
            return self.id
        slug = re.sub(r"[^a-z0-9]", "", self.title.lower())[:20]
        return f"{slug}_{self.year if self.year is not None else 'unknown'}"


@dataclass
class ContextRef:
    """Pointer to a context entry an agent should read."""

    agent_id: str
    key: str


@dataclass
class AgentInput:
    """Everything an agent needs for one execution."""

    run_id: str
    agent_id: str
    kind: AgentKind
    depth: int
    query: str
    config: RunConfig = field(default_factory=RunConfig)
    paper: Paper | None = None
    inputs: list[ContextRef] = field(default_factory=list)
    previous_meta: ContextRef | None = None
    focus_gaps: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ResultItem:
    """One queryable result produced by an agent."""

    result_type: ResultType
    content: dict[str, Any]
    confidence: float
    sources: list[str] = field(default_factory=list)


@dataclass
class AgentOutput:
    """Output of one agent execution, written to the context store as `output`."""

    output: dict[str, Any]
    confidence: float
    status: Literal["completed", "skipped"] = "completed"
    results: list[ResultItem] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    cost_usd: float = 0.0


@dataclass
class BackendResponse:
    """Raw completion returned by an LLM backend."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_seconds: float = 0.0


@runtime_checkable
class AgentBackend(Protocol):
    """
    Protocol for LLM backends consulted by agents.

    Agents work without a backend; when one is configured its JSON reply is
    merged into the heuristic analysis.
    """

    @property
    def name(self) -> str:
        """Human-readable backend name (e.g., 'anthropic:claude-sonnet-4')."""
        ...

    async def verify(self) -> None:
        """
        Verify that the backend's credentials are valid.

        Raises:
            BackendAuthenticationError: If credentials are invalid
        """
        ...

    async def complete(self, system_prompt: str, user_prompt: str) -> BackendResponse:
        """
        Run a single completion.

        Raises:
            BackendUnavailableError: Rate limits or connection problems outlasted the
                backend's own retries
        """
        ...


@runtime_checkable
class ContextReader(Protocol):
    """Read side of the context store, as seen by agents."""

    async def read(
        self,
        run_id: str,
        agent_id: str | None = None,
        key: str | None = None,
        summary_only: bool = False,
        version: int | None = None,
    ) -> ContextSnapshot | list[ContextSnapshot]:
        ...


@runtime_checkable
class Agent(Protocol):
    """Shared agent interface."""

    kind: AgentKind

    async def execute(self, agent_input: AgentInput, context: ContextReader) -> AgentOutput:
        ...
