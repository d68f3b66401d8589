from __future__ import annotations

import allure
import httpx
import pytest

from durable_agents.agents.catalog import default_definitions
from durable_agents.agents.gateway import build_gateway_app
from durable_agents.agents.registry import AgentRegistry
from durable_agents.config import AlarmSettings, Settings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Gateway"),
]


@pytest.fixture()
def registry(tmp_path, clock):
    settings = Settings(data_dir=tmp_path, alarm=AlarmSettings(enabled=False))
    return AgentRegistry(default_definitions(settings), settings=settings, clock=clock)


def _client(registry) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=build_gateway_app(registry)),
        base_url="http://gateway",
    )


@pytest.mark.asyncio
async def test_service_info_lists_agent_types(registry) -> None:
    async with _client(registry) as client:
        response = await client.get("/api")

    body = response.json()
    assert response.status_code == 200
    assert body["service"] == "durable-agents"
    assert body["agentTypes"] == ["echo", "health"]
    assert body["endpoints"]["health"] == "/health"


@pytest.mark.asyncio
async def test_agents_and_health_fan_out_over_all_types(registry) -> None:
    async with _client(registry) as client:
        agents = (await client.get("/agents")).json()
        health = (await client.get("/health")).json()

    assert [item["type"] for item in agents["agents"]] == ["echo", "health"]
    assert agents["agents"][0]["state"]["status"] == "idle"
    assert health["status"] == "healthy"
    assert health["agents"] == [
        {"type": "echo", "status": "ok"},
        {"type": "health", "status": "ok"},
    ]
    await registry.close()


@pytest.mark.asyncio
async def test_health_is_degraded_when_one_agent_fails(registry, monkeypatch) -> None:
    original_forward = registry.forward

    async def _flaky_forward(agent_type, path, **kwargs):
        if agent_type == "echo":
            raise ConnectionError("unreachable")
        return await original_forward(agent_type, path, **kwargs)

    monkeypatch.setattr(registry, "forward", _flaky_forward)

    async with _client(registry) as client:
        health = (await client.get("/health")).json()

    assert health["status"] == "degraded"
    assert health["agents"][0] == {"type": "echo", "status": "error"}
    await registry.close()


@pytest.mark.asyncio
async def test_agent_routes_are_forwarded_to_the_default_instance(registry) -> None:
    async with _client(registry) as client:
        created = await client.post(
            "/agents/echo/tasks",
            json={"name": "hello", "payload": {"x": 1}},
        )
        await registry.resolve("echo").wait_idle()
        task = await client.get(f"/agents/echo/tasks/{created.json()['taskId']}")
        missing_name = await client.post("/agents/echo/tasks", json={})

    assert created.status_code == 201
    assert task.json()["status"] == "completed"
    assert task.json()["result"] == {"name": "hello", "echo": {"x": 1}}
    assert missing_name.status_code == 400
    assert missing_name.json() == {"error": "Task name required"}
    await registry.close()


@pytest.mark.asyncio
async def test_instance_query_parameter_selects_instance(registry) -> None:
    async with _client(registry) as client:
        await client.post("/agents/echo/tasks?instance=tenant-a", json={"name": "scoped"})
        await registry.resolve("echo", "tenant-a").wait_idle()
        scoped = (await client.get("/agents/echo/tasks?instance=tenant-a")).json()
        default = (await client.get("/agents/echo/tasks")).json()

    assert scoped["total"] == 1
    assert default["total"] == 0
    await registry.close()


@pytest.mark.asyncio
async def test_unknown_agent_type_returns_404(registry) -> None:
    async with _client(registry) as client:
        response = await client.get("/agents/nope/state")

    assert response.status_code == 404
    assert response.json() == {"error": "Unknown agent type: nope"}
