"""Registry resolving agent types to addressable, persistent instances."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

import httpx

from durable_agents.agents.errors import UnknownAgentTypeError
from durable_agents.agents.executors.base import AgentDefinition
from durable_agents.agents.instance import AgentInstance
from durable_agents.agents.models import FanOutResult
from durable_agents.config import Settings
from durable_agents.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_KEY = "default"
INTERNAL_BASE_URL = "https://internal"
INSTANCE_NAMESPACE = uuid.UUID("6f1c5d7e-3b0a-5c2e-9d4f-8a7b6c5d4e3f")


def instance_id(agent_type: str, instance_key: str = DEFAULT_INSTANCE_KEY) -> str:
    """Stable identity of ``(agent_type, instance_key)``; the same pair always maps to one id.

    Every agent type gets its own uuid5 namespace, so keys never collide across types.
    """

    return uuid.uuid5(uuid.uuid5(INSTANCE_NAMESPACE, agent_type), instance_key).hex


class AgentRegistry:
    """Maps agent types to instances and forwards requests to their HTTP surface.

    Instances are created lazily on first ``resolve`` and cached for the
    lifetime of the registry. Each one persists to
    ``<data_dir>/<agent_type>/<instance_id>.db``.
    """

    def __init__(
        self,
        definitions: Iterable[AgentDefinition],
        *,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._definitions: dict[str, AgentDefinition] = {}
        for definition in definitions:
            if definition.agent_type in self._definitions:
                raise ValueError(f"Duplicate agent type: {definition.agent_type}")
            self._definitions[definition.agent_type] = definition
        self._instances: dict[tuple[str, str], AgentInstance] = {}

    @property
    def agent_types(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    def is_valid_agent_type(self, agent_type: str) -> bool:
        return agent_type in self._definitions

    def parse_agent_type(self, agent_type: str) -> str:
        if not self.is_valid_agent_type(agent_type):
            raise UnknownAgentTypeError(agent_type, self.agent_types)
        return agent_type

    def instance_id(self, agent_type: str, instance_key: str = DEFAULT_INSTANCE_KEY) -> str:
        return instance_id(agent_type, instance_key)

    def resolve(self, agent_type: str, instance_key: str = DEFAULT_INSTANCE_KEY) -> AgentInstance:
        """Return the instance addressed by ``(agent_type, instance_key)``, opening it once."""

        definition = self._definitions.get(agent_type)
        if definition is None:
            raise UnknownAgentTypeError(agent_type, self.agent_types)

        instance = self._instances.get((agent_type, instance_key))
        if instance is not None:
            return instance

        identity = instance_id(agent_type, instance_key)
        instance = AgentInstance(
            definition,
            instance_id=identity,
            instance_key=instance_key,
            db_path=self.settings.data_dir / agent_type / f"{identity}.db",
            busy_timeout_ms=self.settings.sqlite_busy_timeout_ms,
            task_settings=self.settings.tasks,
            alarm_settings=self.settings.alarm,
            clock=self._clock,
        )
        instance.open()
        try:
            instance.bind_loop(asyncio.get_running_loop())
        except RuntimeError:
            logger.debug("No running loop; alarm of %s stays unbound", identity)
        self._instances[(agent_type, instance_key)] = instance
        return instance

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        for instance in self._instances.values():
            instance.bind_loop(loop)

    async def forward(
        self,
        agent_type: str,
        path: str,
        *,
        method: str = "GET",
        body: Any = None,
        instance_key: str = DEFAULT_INSTANCE_KEY,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a synthetic request to the instance's own HTTP surface."""

        instance = self.resolve(agent_type, instance_key)
        transport = httpx.ASGITransport(app=instance.app)
        async with httpx.AsyncClient(transport=transport, base_url=INTERNAL_BASE_URL) as client:
            return await client.request(
                method.upper(),
                path if path.startswith("/") else f"/{path}",
                json=body,
                params=params,
            )

    async def fan_out(
        self,
        operation: Callable[[str], Awaitable[Any]],
    ) -> list[FanOutResult]:
        """Run ``operation`` for every agent type concurrently.

        One type failing never affects the others; its slot carries the error.
        """

        agent_types = self.agent_types
        outcomes = await asyncio.gather(
            *(operation(agent_type) for agent_type in agent_types),
            return_exceptions=True,
        )
        results: list[FanOutResult] = []
        for agent_type, outcome in zip(agent_types, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Fan-out to %s failed: %s", agent_type, outcome)
                results.append(FanOutResult(type=agent_type, error=str(outcome) or repr(outcome)))
            else:
                results.append(FanOutResult(type=agent_type, value=outcome))
        return results

    async def all_metadata(self) -> list[dict[str, Any]]:
        results = await self.fan_out(lambda agent_type: self._fetch_json(agent_type, "/metadata"))
        return [
            {
                "type": result.type,
                "metadata": result.value if result.ok else {"error": "Failed to fetch metadata"},
            }
            for result in results
        ]

    async def all_states(self) -> list[dict[str, Any]]:
        results = await self.fan_out(lambda agent_type: self._fetch_json(agent_type, "/state"))
        return [
            {
                "type": result.type,
                "state": result.value if result.ok else {"error": "Failed to fetch state"},
            }
            for result in results
        ]

    async def close(self) -> None:
        for instance in list(self._instances.values()):
            await instance.close()
        self._instances.clear()

    async def _fetch_json(self, agent_type: str, path: str) -> Any:
        response = await self.forward(agent_type, path)
        response.raise_for_status()
        return response.json()
