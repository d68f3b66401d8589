from __future__ import annotations

from dataclasses import replace

import allure
import pytest

from durable_agents.agents.catalog import default_definitions, echo_definition
from durable_agents.agents.errors import UnknownAgentTypeError
from durable_agents.agents.registry import AgentRegistry, instance_id
from durable_agents.config import AlarmSettings, Settings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Registry & Fan-out"),
]


@pytest.fixture()
def registry(tmp_path, clock):
    settings = Settings(data_dir=tmp_path / "data", alarm=AlarmSettings(enabled=False))
    return AgentRegistry(default_definitions(settings), settings=settings, clock=clock)


def test_instance_id_is_a_pure_function_of_type_and_key() -> None:
    assert instance_id("echo") == instance_id("echo", "default")
    assert instance_id("echo", "a") == instance_id("echo", "a")
    assert instance_id("echo", "a") != instance_id("echo", "b")
    assert instance_id("echo", "a") != instance_id("health", "a")
    assert len(instance_id("echo")) == 32


def test_instance_id_never_collides_across_pairs_sharing_a_joined_form() -> None:
    assert instance_id("a:b", "c") != instance_id("a", "b:c")
    assert instance_id("a", "") != instance_id("", "a")


@pytest.mark.asyncio
async def test_resolve_keeps_pairs_sharing_a_joined_form_apart(tmp_path, clock) -> None:
    settings = Settings(data_dir=tmp_path / "data", alarm=AlarmSettings(enabled=False))
    definitions = [
        replace(echo_definition(), metadata=replace(echo_definition().metadata, type=agent_type))
        for agent_type in ("a", "a:b")
    ]
    registry = AgentRegistry(definitions, settings=settings, clock=clock)

    first = registry.resolve("a:b", "c")
    second = registry.resolve("a", "b:c")

    assert first is not second
    assert first.id != second.id
    assert first.agent_type == "a:b"
    assert second.agent_type == "a"
    assert registry.resolve("a:b", "c") is first
    await registry.close()


@pytest.mark.asyncio
async def test_resolve_caches_instances_per_identity(registry, tmp_path) -> None:
    default = registry.resolve("echo")
    again = registry.resolve("echo")
    other = registry.resolve("echo", "tenant-1")

    assert default is again
    assert other is not default
    assert default.id == instance_id("echo")
    assert default.db_path == tmp_path / "data" / "echo" / f"{default.id}.db"
    assert default.db_path.exists()
    await registry.close()


def test_unknown_type_is_rejected(registry) -> None:
    with pytest.raises(UnknownAgentTypeError, match="Invalid agent type: nope. Valid types: echo, health"):
        registry.resolve("nope")
    assert registry.parse_agent_type("health") == "health"
    assert registry.is_valid_agent_type("nope") is False


def test_duplicate_agent_types_are_rejected(tmp_path) -> None:
    settings = Settings(data_dir=tmp_path)
    definitions = default_definitions(settings)

    with pytest.raises(ValueError, match="Duplicate agent type: echo"):
        AgentRegistry([*definitions, definitions[0]], settings=settings)


@pytest.mark.asyncio
async def test_forward_reaches_instance_http_surface(registry) -> None:
    created = await registry.forward(
        "echo",
        "/tasks",
        method="POST",
        body={"name": "ping", "payload": {"n": 1}},
    )
    task_id = created.json()["taskId"]
    await registry.resolve("echo").wait_idle()
    fetched = await registry.forward("echo", f"/tasks/{task_id}")

    assert created.status_code == 201
    assert fetched.json()["result"] == {"name": "ping", "echo": {"n": 1}}
    await registry.close()


@pytest.mark.asyncio
async def test_fan_out_isolates_failures(registry) -> None:
    async def _operation(agent_type: str) -> str:
        if agent_type == "health":
            raise RuntimeError("instance down")
        return f"{agent_type}-ok"

    results = await registry.fan_out(_operation)

    assert [result.type for result in results] == ["echo", "health"]
    assert results[0].ok and results[0].value == "echo-ok"
    assert not results[1].ok
    assert results[1].error == "instance down"


@pytest.mark.asyncio
async def test_all_states_and_metadata_substitute_error_placeholders(registry, monkeypatch) -> None:
    original_forward = registry.forward

    async def _flaky_forward(agent_type, path, **kwargs):
        if agent_type == "health":
            raise ConnectionError("unreachable")
        return await original_forward(agent_type, path, **kwargs)

    monkeypatch.setattr(registry, "forward", _flaky_forward)

    states = await registry.all_states()
    metadata = await registry.all_metadata()

    assert states[0]["type"] == "echo"
    assert states[0]["state"]["status"] == "idle"
    assert states[1] == {"type": "health", "state": {"error": "Failed to fetch state"}}
    assert metadata[0]["metadata"]["type"] == "echo"
    assert metadata[1] == {"type": "health", "metadata": {"error": "Failed to fetch metadata"}}
    await registry.close()
