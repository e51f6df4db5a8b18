"""Dispatch of agent executions by kind."""

from ..scoring.confidence import ConfidenceCalculator
from ..store.models import AgentKind
from .meso import MesoAgent
from .meta import MetaAgent
from .micro import MicroAgent
from .protocol import AgentBackend, AgentInput, AgentOutput, ContextReader


class AgentExecutor:
    """Holds one agent per kind and routes inputs to it."""

    def __init__(
        self,
        backend: AgentBackend | None = None,
        calculator: ConfidenceCalculator | None = None,
    ):
        self.backend = backend
        self.micro = MicroAgent(backend)
        self.meso = MesoAgent()
        self.meta = MetaAgent(calculator)

    async def execute(self, agent_input: AgentInput, context: ContextReader) -> AgentOutput:
        match agent_input.kind:
            case AgentKind.MICRO:
                return await self.micro.execute(agent_input, context)
            case AgentKind.MESO:
                return await self.meso.execute(agent_input, context)
            case AgentKind.META:
                return await self.meta.execute(agent_input, context)
            case _:
                raise ValueError(f"Unknown agent kind: {agent_input.kind}")
