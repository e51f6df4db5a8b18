"""
RMRI - Recursive multi-agent research orchestration.

Analyzes a corpus of papers in rounds: micro agents read individual papers,
a meso agent clusters their analyses, and a meta agent ranks the research
gaps. Rounds repeat until the gap ranking converges or the depth budget is
spent.

Example:
    import asyncio
    from rmri import Database, Orchestrator

    async def main():
        database = Database(".rmri/rmri.db")
        await database.initialize()
        orchestrator = Orchestrator(database)

        run = await orchestrator.start("graph neural networks for chemistry")
        handle = await orchestrator.execute(run.id, papers)
        await handle.wait()

        report = await orchestrator.status(run.id)
        gaps = await orchestrator.get_results(run.id, final_only=True)

    asyncio.run(main())
"""

__version__ = "0.1.0"

from .agents.protocol import Paper
from .config import EngineSettings, RunConfig
from .orchestrator import Orchestrator
from .store.database import Database

__all__ = [
    "__version__",
    "Database",
    "EngineSettings",
    "Orchestrator",
    "Paper",
    "RunConfig",
]
