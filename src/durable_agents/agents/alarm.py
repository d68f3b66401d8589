"""Single coalesced wake-up timer that drains due tasks of one instance."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING

from durable_agents.agents.models import AlarmReport, RunDisposition, Task
from durable_agents.agents.task_store import TaskStore
from durable_agents.storage.common import utc_now

if TYPE_CHECKING:
    from durable_agents.agents.lifecycle import TaskRun

logger = logging.getLogger(__name__)

DEFAULT_ALARM_BATCH_SIZE = 10

TaskRunner = Callable[[Task], Awaitable["TaskRun"]]


class AlarmScheduler:
    """Tracks at most one armed wake-up time per instance.

    ``arm`` coalesces: the armed time only ever moves earlier. ``set`` replaces
    it exactly and is what ``alarm`` uses once a batch is done. When bound to
    an event loop, the armed time is backed by one ``call_later`` handle that
    is replaced on every change; unbound, the time is only recorded and
    ``alarm`` must be called by the owner.
    """

    def __init__(
        self,
        tasks: TaskStore,
        *,
        lock: asyncio.Lock,
        clock: Callable[[], datetime] = utc_now,
        batch_size: int = DEFAULT_ALARM_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("Alarm batch size must be > 0.")
        self.tasks = tasks
        self.batch_size = batch_size
        self._lock = lock
        self._clock = clock
        self._runner: TaskRunner | None = None
        self._armed_at: datetime | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._firing: set[asyncio.Task[AlarmReport]] = set()

    @property
    def armed_at(self) -> datetime | None:
        return self._armed_at

    def attach(self, runner: TaskRunner) -> None:
        """Register the coroutine that executes one task."""

        self._runner = runner

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Back the armed time with a real timer on ``loop``."""

        self._loop = loop
        self._reschedule()

    def unbind(self) -> None:
        self._cancel_handle()
        self._loop = None

    async def wait_fired(self) -> None:
        """Wait for alarm runs started by the timer."""

        while self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)

    def arm(self, at: datetime) -> None:
        """Arm for ``at`` unless an earlier wake-up is already armed."""

        if self._armed_at is not None and self._armed_at <= at:
            return
        self._armed_at = at
        self._reschedule()

    def set(self, at: datetime | None) -> None:
        """Replace the armed time exactly; ``None`` leaves the instance dormant."""

        self._armed_at = at
        self._reschedule()

    def cancel(self) -> None:
        self.set(None)

    def resume(self) -> datetime | None:
        """Re-arm from persisted tasks, e.g. after a process restart."""

        now = self._clock()
        if self.tasks.count_due(now=now) > 0:
            self.set(now)
        else:
            self.set(self.tasks.next_scheduled_at(now=now))
        return self._armed_at

    async def alarm(self) -> AlarmReport:
        """Run one bounded batch of due tasks and re-arm for the next one.

        When due work beyond ``batch_size`` remains, the alarm is re-armed to
        ``now`` instead of the earliest future ``scheduled_for`` so the backlog
        drains over consecutive firings. With no backlog it is set to the
        earliest future ``scheduled_for``, or cleared when none exists.
        """

        if self._runner is None:
            raise RuntimeError("AlarmScheduler has no task runner attached.")

        async with self._lock:
            report = AlarmReport()
            # Firing consumes the armed slot; retries below may arm it again.
            self.set(None)
            now = self._clock()
            due = self.tasks.list_due(now=now, limit=self.batch_size)
            logger.debug("Alarm triggered: due=%s batch_size=%s", len(due), self.batch_size)

            for task in due:
                run = await self._runner(task)
                report.processed += 1
                report.task_ids.append(task.id)
                if run.disposition is RunDisposition.COMPLETED:
                    report.succeeded += 1
                elif run.disposition is RunDisposition.RETRIED:
                    report.retried += 1
                elif run.disposition is RunDisposition.FAILED:
                    report.failed += 1
                else:
                    report.skipped += 1

            after = self._clock()
            if self.tasks.count_due(now=after) > 0:
                # Backlog beyond the batch drains over the following firings.
                self.set(after)
            else:
                self.set(self.tasks.next_scheduled_at(now=after))
            report.next_alarm_at = self._armed_at
            return report

    def _reschedule(self) -> None:
        self._cancel_handle()
        if self._loop is None or self._armed_at is None or self._loop.is_closed():
            return
        delay = max(0.0, (self._armed_at - self._clock()).total_seconds())
        self._handle = self._loop.call_later(delay, self._on_timer)

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_timer(self) -> None:
        self._handle = None
        if self._loop is None:
            return
        firing = self._loop.create_task(self.alarm())
        self._firing.add(firing)
        firing.add_done_callback(self._on_fired)

    def _on_fired(self, firing: asyncio.Task[AlarmReport]) -> None:
        self._firing.discard(firing)
        if firing.cancelled():
            return
        error = firing.exception()
        if error is not None:
            logger.error("Alarm run failed", exc_info=error)
