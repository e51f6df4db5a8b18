from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from rmri.errors import ConflictError, NotFoundError, ValidationError
from rmri.orchestrator import RunStatusReport
from rmri.store.models import (
    Agent,
    AgentKind,
    LogEntry,
    Result,
    ResultType,
    Run,
    RunStatus,
)
from rmri.web.api import runs


class _FakeOrchestrator:
    def __init__(self):
        self.runs: dict[str, Run] = {}
        self.last_config = None
        self.last_execute = None

    async def start(self, query, config=None, owner_id=None):
        if not query.strip():
            raise ValidationError("Query must not be empty")
        self.last_config = config
        run = Run(query=query, owner_id=owner_id)
        self.runs[run.id] = run
        return run

    async def get_run(self, run_id):
        if run_id not in self.runs:
            raise NotFoundError(f"Run {run_id} not found")
        return self.runs[run_id]

    async def list_runs(self, owner_id=None, limit=50, offset=0):
        runs = [r for r in self.runs.values() if owner_id is None or r.owner_id == owner_id]
        return runs[offset : offset + limit]

    async def execute(self, run_id, papers, agent_backend=None):
        run = await self.get_run(run_id)
        if run.status != RunStatus.INITIALIZING:
            raise ConflictError(f"Run {run_id} is {run.status.value}; it can only be executed once")
        if not papers:
            raise ValidationError("At least one paper is required")
        run.status = RunStatus.EXECUTING
        self.last_execute = (run_id, papers, agent_backend)
        return SimpleNamespace(run_id=run_id, status=RunStatus.EXECUTING)

    async def status(self, run_id):
        run = await self.get_run(run_id)
        return RunStatusReport(
            run_id=run.id,
            status=run.status,
            progress=40,
            agents_by_status={"pending": 3, "active": 0, "completed": 2, "failed": 0, "skipped": 0},
            agents_by_type={"micro": 5, "meso": 0, "meta": 0},
            elapsed_ms=1200,
            recent_logs=[LogEntry(run_id=run.id, message="Round 0 started with 5 papers")],
            current_depth=0,
            converged=False,
        )

    async def get_results(self, run_id, result_type=None, final_only=False):
        await self.get_run(run_id)
        results = [
            Result(run_id=run_id, agent_id="micro-0-0", result_type=ResultType.PAPER_ANALYSIS,
                   content={"paper_id": "p1"}, confidence=0.6),
            Result(run_id=run_id, agent_id="meta-0", result_type=ResultType.GAP_RANKING,
                   content={"gaps": []}, confidence=0.8, is_final=True),
        ]
        return [
            r for r in results
            if (result_type is None or r.result_type == result_type)
            and (not final_only or r.is_final)
        ]

    async def list_agents(self, run_id):
        await self.get_run(run_id)
        return [Agent(id="micro-0-0", run_id=run_id, kind=AgentKind.MICRO, paper_id="p1")]

    async def list_logs(self, run_id, level=None, limit=100, offset=0):
        await self.get_run(run_id)
        self.last_logs_query = (level, limit, offset)
        return [LogEntry(run_id=run_id, message="Run created")]

    async def cancel(self, run_id):
        run = await self.get_run(run_id)
        if run.status == RunStatus.INITIALIZING:
            run.status = RunStatus.CANCELLED
        return run


def _build_client(fake):
    app = FastAPI()
    runs._orchestrator = fake
    app.include_router(runs.router, prefix="/api/rmri")
    return TestClient(app)


def _start(client, headers=None, **body):
    response = client.post("/api/rmri/start", json={"query": "LLM evaluation", **body}, headers=headers)
    assert response.status_code == 201
    return response.json()["runId"]


def test_start_returns_created_run():
    fake = _FakeOrchestrator()
    client = _build_client(fake)

    response = client.post(
        "/api/rmri/start",
        json={"query": "LLM evaluation", "config": {"maxDepth": 2}},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "initializing"
    assert body["runId"] in fake.runs
    assert fake.last_config == {"maxDepth": 2}


def test_start_rejects_empty_query():
    client = _build_client(_FakeOrchestrator())

    response = client.post("/api/rmri/start", json={"query": " "})

    assert response.status_code == 400
    assert response.json()["detail"] == "Query must not be empty"


def test_execute_accepts_papers():
    fake = _FakeOrchestrator()
    client = _build_client(fake)
    run_id = _start(client)

    response = client.post(
        f"/api/rmri/{run_id}/execute",
        json={
            "papers": [{"doi": "10.1/abc", "title": "T", "fullText": "body", "citationCount": 3}],
            "agentBackend": "heuristic",
        },
    )

    assert response.status_code == 202
    assert response.json() == {"runId": run_id, "status": "executing"}
    _, papers, backend = fake.last_execute
    assert papers[0].paper_id == "10.1/abc"
    assert papers[0].text == "body"
    assert papers[0].citations == 3
    assert backend == "heuristic"


def test_execute_accepts_papers_with_null_fields():
    fake = _FakeOrchestrator()
    client = _build_client(fake)
    run_id = _start(client)

    response = client.post(
        f"/api/rmri/{run_id}/execute",
        json={
            "papers": [
                {"id": "p1", "title": "Graph models", "abstract": None, "fullText": None},
                {"id": "p2", "title": None, "content": "Body text", "citationCount": None},
                {"id": "p3", "title": None, "abstract": None, "authors": None},
            ]
        },
    )

    assert response.status_code == 202
    _, papers, _ = fake.last_execute
    assert papers[0].abstract == "" and papers[0].text == ""
    assert papers[1].text == "Body text"
    assert papers[1].citations == 0
    assert papers[2].authors == []
    assert not papers[2].has_content


def test_execute_error_mapping():
    client = _build_client(_FakeOrchestrator())
    run_id = _start(client)

    assert client.post("/api/rmri/missing/execute", json={"papers": [{"title": "x"}]}).status_code == 404
    assert client.post(f"/api/rmri/{run_id}/execute", json={"papers": []}).status_code == 400
    assert client.post(f"/api/rmri/{run_id}/execute", json={"papers": [{"title": "x"}]}).status_code == 202
    conflict = client.post(f"/api/rmri/{run_id}/execute", json={"papers": [{"title": "x"}]})
    assert conflict.status_code == 409


def test_other_users_run_is_forbidden():
    client = _build_client(_FakeOrchestrator())
    run_id = _start(client, headers={"X-User-Id": "alice"})

    assert client.get(f"/api/rmri/{run_id}/status", headers={"X-User-Id": "bob"}).status_code == 403
    assert client.get(f"/api/rmri/{run_id}/status", headers={"X-User-Id": "alice"}).status_code == 200


def test_list_runs_filters_by_caller():
    client = _build_client(_FakeOrchestrator())
    _start(client, headers={"X-User-Id": "alice"})
    _start(client, headers={"X-User-Id": "bob"})

    body = client.get("/api/rmri/runs", headers={"X-User-Id": "alice"}).json()

    assert [r["ownerId"] for r in body["runs"]] == ["alice"]
    assert body["limit"] == 20
    assert body["runs"][0]["config"]["maxDepth"] == 3


def test_status_uses_camel_case():
    client = _build_client(_FakeOrchestrator())
    run_id = _start(client)

    body = client.get(f"/api/rmri/{run_id}/status").json()

    assert body["runId"] == run_id
    assert body["progress"] == 40
    assert body["agentsByStatus"]["completed"] == 2
    assert body["agentsByType"]["micro"] == 5
    assert body["elapsedMs"] == 1200
    assert body["recentLogs"][0]["message"] == "Round 0 started with 5 papers"
    assert body["finalDepth"] is None


def test_results_filters():
    client = _build_client(_FakeOrchestrator())
    run_id = _start(client)

    everything = client.get(f"/api/rmri/{run_id}/results").json()
    final = client.get(f"/api/rmri/{run_id}/results", params={"finalOnly": "true"}).json()
    ranking = client.get(f"/api/rmri/{run_id}/results", params={"type": "gap_ranking"}).json()

    assert len(everything["results"]) == 2
    assert [r["agentId"] for r in final["results"]] == ["meta-0"]
    assert final["results"][0]["isFinal"] is True
    assert [r["resultType"] for r in ranking["results"]] == ["gap_ranking"]
    assert client.get(f"/api/rmri/{run_id}/results", params={"type": "bogus"}).status_code == 422


def test_agents_and_logs():
    fake = _FakeOrchestrator()
    client = _build_client(fake)
    run_id = _start(client)

    agents = client.get(f"/api/rmri/{run_id}/agents").json()
    logs = client.get(f"/api/rmri/{run_id}/logs", params={"level": "error", "limit": 5}).json()

    assert agents["agents"][0]["id"] == "micro-0-0"
    assert agents["agents"][0]["paperId"] == "p1"
    assert logs["logs"][0]["message"] == "Run created"
    assert logs["limit"] == 5
    assert fake.last_logs_query == ("error", 5, 0)
    assert client.get(f"/api/rmri/{run_id}/logs", params={"level": "debug"}).status_code == 422


def test_cancel_reports_state():
    client = _build_client(_FakeOrchestrator())
    idle = _start(client)
    executing = _start(client)
    client.post(f"/api/rmri/{executing}/execute", json={"papers": [{"title": "x"}]})

    assert client.post(f"/api/rmri/{idle}/cancel").json()["status"] == "cancelled"
    assert client.post(f"/api/rmri/{executing}/cancel").json()["status"] == "cancelled"
    assert client.post("/api/rmri/missing/cancel").status_code == 404


def test_uninitialized_orchestrator_returns_500():
    client = _build_client(None)

    response = client.post("/api/rmri/start", json={"query": "q"})

    assert response.status_code == 500
