"""Test fixtures using an in-memory sqlite store and mocked upstream APIs."""

import asyncio
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

from conductor.agents.catalog import FALLBACK_MODELS, ModelValidator
from conductor.agents.client import AgentApiClient
from conductor.config import Settings
from conductor.dispatch.broker import BrokerUnavailable
from conductor.dispatch.engine import OrchestrationEngine
from conductor.planning.planner import TaskPlanner
from conductor.service import OrchestrationService
from conductor.state.store import StateStore
from conductor.storage.database import Database
from conductor.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# Fake agent API (served through httpx.MockTransport)
# ---------------------------------------------------------------------------


class FakeAgentApi:
    """Records launches/stops and answers status and catalog requests."""

    def __init__(self) -> None:
        self.launched: list[dict[str, Any]] = []
        self.stopped: list[str] = []
        self.statuses: dict[str, str] = {}
        self.models: list[str] = list(FALLBACK_MODELS)
        self.models_status = 200
        self.launch_status: int | None = None
        self.stop_status: int | None = None

    @property
    def agent_ids(self) -> list[str]:
        return [f"agent-{i + 1}" for i in range(len(self.launched))]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/v0/agents":
            if self.launch_status:
                return httpx.Response(self.launch_status, json={"error": "launch rejected"})
            self.launched.append(json.loads(request.content))
            return httpx.Response(200, json={"id": f"agent-{len(self.launched)}", "status": "CREATING"})
        if request.method == "POST" and path.endswith("/stop"):
            if self.stop_status:
                return httpx.Response(self.stop_status, json={"error": "stop failed"})
            agent_id = path.split("/")[3]
            self.stopped.append(agent_id)
            return httpx.Response(200, json={"id": agent_id})
        if request.method == "GET" and path == "/v0/models":
            return httpx.Response(self.models_status, json={"models": self.models})
        if request.method == "GET" and path.endswith("/conversation"):
            return httpx.Response(200, json={"messages": [{"type": "assistant_message", "text": "working"}]})
        if request.method == "GET" and path.startswith("/v0/agents/"):
            agent_id = path.split("/")[3]
            return httpx.Response(200, json={"id": agent_id, "status": self.statuses.get(agent_id, "RUNNING")})
        return httpx.Response(404, json={"error": "not found"})


class FakeBroker:
    """In-memory stand-in for the Redis broker."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.jobs: dict[str, dict[str, Any]] = {}
        self.queue: list[str] = []
        self.removed: list[str] = []

    async def enqueue(self, job_type: str, payload: dict[str, Any], job_id: str) -> str:
        if not self.available:
            raise BrokerUnavailable("connection refused")
        self.jobs[job_id] = payload
        self.queue.append(job_id)
        return job_id

    async def pop(self, job_type: str, timeout: int = 5):
        while self.queue:
            job_id = self.queue.pop(0)
            if job_id in self.jobs:
                return job_id, self.jobs.pop(job_id)
        # Empty queue: yield like a blocking pop would
        await asyncio.sleep(0.01)
        return None

    async def remove(self, job_id: str) -> bool:
        self.removed.append(job_id)
        return self.jobs.pop(job_id, None) is not None

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        pass


def make_prompt(sections: int = 3, width: int = 120) -> str:
    """Multi-line prompt whose fallback plan has roughly one task per section."""
    lines = []
    for i in range(sections):
        for j in range(4):
            text = f"Section {i + 1} line {j + 1}: implement feature {i + 1} in src/feature_{i + 1}.py "
            lines.append((text * 4)[:width])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="",
        agent_api_key="test-agent-key",
        anthropic_api_key="",
        anthropic_auth_token="",
        webhook_url="",
        worker_id="worker-test",
    )


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped in-memory database with all tables created."""
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def store(db, settings):
    return StateStore(db, settings)


@pytest.fixture
def fake_api() -> FakeAgentApi:
    return FakeAgentApi()


@pytest_asyncio.fixture
async def http_client(fake_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler))
    yield client
    await client.aclose()


@pytest.fixture
def agent_client(settings, http_client) -> AgentApiClient:
    return AgentApiClient(settings, http_client)


@pytest.fixture
def validator(agent_client) -> ModelValidator:
    return ModelValidator(agent_client.list_models, ttl_seconds=3600)


@pytest.fixture
def planner(settings, http_client) -> TaskPlanner:
    # No Anthropic credentials: always the deterministic chunked plan
    return TaskPlanner(settings, http_client)


@pytest.fixture
def engine(store, agent_client, planner, validator, settings) -> OrchestrationEngine:
    return OrchestrationEngine(store, agent_client, planner, validator, settings)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def service(store, validator, settings, broker, engine) -> OrchestrationService:
    return OrchestrationService(store, validator, settings, broker=broker, engine=engine)
