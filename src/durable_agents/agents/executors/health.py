"""Health agent: HTTP endpoint checks with latency grading and a report route."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import APIRouter, Query

from durable_agents.agents.executors.base import TaskOutcome
from durable_agents.agents.log_store import LogStore
from durable_agents.agents.models import LogLevel, Task
from durable_agents.agents.state_store import StateStore
from durable_agents.config import HealthSettings
from durable_agents.storage.common import from_iso, to_iso, utc_now

if TYPE_CHECKING:
    from durable_agents.agents.instance import AgentInstance

logger = logging.getLogger(__name__)

CHECKS_STATE_KEY = "health.checks"
MAX_STORED_CHECKS = 500
USER_AGENT = "durable-agents-health/1.0"

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"


def latency_severity(latency_ms: float, *, warn_ms: int, critical_ms: int) -> str:
    if latency_ms >= critical_ms:
        return CRITICAL
    if latency_ms >= warn_ms:
        return WARNING
    return HEALTHY


class HealthExecutor:
    """Runs ``checkEndpoint`` and ``runHealthScan`` tasks.

    Every check is appended to a bounded list in the instance state so the
    ``/report`` route can aggregate it later. ``transport`` lets callers swap
    the network for an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        *,
        state: StateStore,
        logs: LogStore,
        settings: HealthSettings,
        clock: Callable[[], datetime] = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.state = state
        self.logs = logs
        self.settings = settings
        self._clock = clock
        self._transport = transport

    async def execute(self, task: Task) -> TaskOutcome:
        started = time.monotonic()
        payload = task.payload if isinstance(task.payload, dict) else {}

        if task.name == "checkEndpoint":
            outcome = await self.check_endpoint(
                payload.get("url"),
                expected_status=int(payload.get("expectedStatus", 200)),
            )
        elif task.name == "runHealthScan":
            outcome = await self.run_health_scan(
                quick=bool(payload.get("quick", False)),
                endpoints=payload.get("endpoints"),
            )
        else:
            outcome = TaskOutcome(success=False, error=f"Unknown task: {task.name}")
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    async def check_endpoint(self, url: Any, *, expected_status: int = 200) -> TaskOutcome:
        if not isinstance(url, str) or not url.strip():
            return TaskOutcome(success=False, error="checkEndpoint requires a url")

        async with self._client() as client:
            return await self._check(client, url, expected_status)

    async def run_health_scan(
        self,
        *,
        quick: bool = False,
        endpoints: list[str] | None = None,
    ) -> TaskOutcome:
        targets = list(endpoints) if endpoints else list(self.settings.endpoints)
        if quick:
            targets = targets[:1]

        results: list[dict[str, Any]] = []
        async with self._client() as client:
            for url in targets:
                outcome = await self._check(client, url, 200)
                results.append(
                    {
                        "check": f"endpoint:{url}",
                        "success": outcome.success,
                        "data": outcome.data,
                        "error": outcome.error,
                    },
                )

        healthy = sum(1 for item in results if item["success"])
        unhealthy = len(results) - healthy
        summary = {"total": len(results), "healthy": healthy, "unhealthy": unhealthy}
        self._log(LogLevel.INFO, "Health scan complete", summary)
        return TaskOutcome(
            success=unhealthy == 0,
            data={"summary": summary, "results": results},
            error=f"{unhealthy} endpoint(s) unhealthy" if unhealthy else None,
        )

    def report(self, *, hours: int = 24) -> dict[str, Any]:
        """Aggregate recorded checks of the last ``hours`` hours by target."""

        since = self._clock() - timedelta(hours=hours)
        checks = [
            check
            for check in self.recent_checks()
            if from_iso(check["checkedAt"]) >= since
        ]

        by_target: dict[str, dict[str, Any]] = {}
        for check in checks:
            bucket = by_target.setdefault(
                check["target"],
                {
                    "target": check["target"],
                    "totalChecks": 0,
                    HEALTHY: 0,
                    "warnings": 0,
                    CRITICAL: 0,
                    "latencies": [],
                },
            )
            bucket["totalChecks"] += 1
            if check["status"] == WARNING:
                bucket["warnings"] += 1
            else:
                bucket[check["status"]] += 1
            if check.get("latencyMs") is not None:
                bucket["latencies"].append(check["latencyMs"])

        targets = []
        for bucket in by_target.values():
            latencies = bucket.pop("latencies")
            bucket["avgLatency"] = sum(latencies) / len(latencies) if latencies else None
            bucket["maxLatency"] = max(latencies) if latencies else None
            bucket["minLatency"] = min(latencies) if latencies else None
            targets.append(bucket)

        healthy_total = sum(1 for check in checks if check["status"] == HEALTHY)
        health_score = round(healthy_total / len(checks) * 100) if checks else 100
        return {
            "period": {"hours": hours, "since": to_iso(since)},
            "healthScore": health_score,
            "byTarget": targets,
            "totalChecks": len(checks),
        }

    def recent_checks(self) -> list[dict[str, Any]]:
        return list(self.state.get(CHECKS_STATE_KEY, []))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )

    async def _check(
        self,
        client: httpx.AsyncClient,
        url: str,
        expected_status: int,
    ) -> TaskOutcome:
        check_started = time.monotonic()
        try:
            response = await client.get(url)
        except httpx.HTTPError as error:
            message = str(error) or type(error).__name__
            self._record(url, status=CRITICAL, error=message)
            self._log(
                LogLevel.ERROR,
                f"Alert: Endpoint {url} unreachable: {message}",
                {"target": url},
            )
            return TaskOutcome(success=False, data={"url": url, "healthy": False}, error=message)

        latency_ms = int((time.monotonic() - check_started) * 1000)
        is_healthy = response.status_code == expected_status
        severity = latency_severity(
            latency_ms,
            warn_ms=self.settings.latency_warn_ms,
            critical_ms=self.settings.latency_critical_ms,
        )
        self._record(
            url,
            status=severity if is_healthy else CRITICAL,
            latency_ms=latency_ms,
            status_code=response.status_code,
        )
        if not is_healthy or severity == CRITICAL:
            self._log(
                LogLevel.WARN if is_healthy else LogLevel.ERROR,
                f"Alert: Endpoint {url} {'slow' if is_healthy else 'unhealthy'}: "
                f"{response.status_code} ({latency_ms}ms)",
                {"target": url},
            )
        self._log(
            LogLevel.INFO,
            f"Endpoint check: {url}",
            {"status": response.status_code, "latency": latency_ms, "healthy": is_healthy},
        )
        return TaskOutcome(
            success=is_healthy,
            data={
                "url": url,
                "status": response.status_code,
                "latency": latency_ms,
                "healthy": is_healthy,
                "severity": severity,
            },
            error=None if is_healthy else f"Unexpected status {response.status_code} from {url}",
        )

    def _log(self, level: LogLevel, message: str, context: Any = None) -> None:
        error = self.logs.try_log(level, message, context)
        if error is not None:
            logger.warning("Health log write failed (%s): %s", message, error)

    def _record(
        self,
        url: str,
        *,
        status: str,
        latency_ms: int | None = None,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        checks = self.recent_checks()
        checks.append(
            {
                "target": url,
                "status": status,
                "latencyMs": latency_ms,
                "statusCode": status_code,
                "error": error,
                "checkedAt": to_iso(self._clock()),
            },
        )
        self.state.set(CHECKS_STATE_KEY, checks[-MAX_STORED_CHECKS:])
        logger.debug("Recorded health check target=%s status=%s", url, status)


def build_health_routes(instance: AgentInstance) -> APIRouter:
    """Extra routes of the health agent: ``/report`` and ``/checks``."""

    executor: HealthExecutor = instance.executor  # type: ignore[assignment]
    router = APIRouter()

    @router.get("/report")
    async def get_report(hours: int = Query(default=24, ge=1)) -> dict[str, Any]:
        return executor.report(hours=hours)

    @router.get("/checks")
    async def get_checks(limit: int = Query(default=100, ge=1)) -> dict[str, Any]:
        checks = executor.recent_checks()
        return {"checks": list(reversed(checks))[:limit]}

    return router
