"""Micro, meso and meta analysis agents."""

from .executor import AgentExecutor
from .meso import MesoAgent
from .meta import MetaAgent
from .micro import MicroAgent
from .protocol import (
    AgentBackend,
    AgentInput,
    AgentOutput,
    BackendResponse,
    ContextRef,
    Paper,
    ResultItem,
)

__all__ = [
    "AgentBackend",
    "AgentExecutor",
    "AgentInput",
    "AgentOutput",
    "BackendResponse",
    "ContextRef",
    "MesoAgent",
    "MetaAgent",
    "MicroAgent",
    "Paper",
    "ResultItem",
]
