"""Utility Class that can be used to implement cron jobs based on asyncio tasks"""

# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.

import asyncio
import logging
import time
from typing import Protocol

logger = logging.getLogger(__name__)


class Condition(Protocol):
    """Check whether the cron task should run."""

    def __call__(self) -> bool:  # pragma: no cover # noqa: D102
        ...


class Task(Protocol):
    """Task for the cron job."""

    async def __call__(self) -> None:  # pragma: no cover # noqa: D102
        ...


class Job:
    """Periodically run a given task if a given condition is met."""

    name: str
    interval: float
    condition: Condition
    task: Task
    stop: asyncio.Event | None
    failure_level: int
    run_immediately: bool

    def __init__(
        self,
        *,
        name: str,
        interval: float,
        condition: Condition,
        task: Task,
        stop: asyncio.Event | None = None,
        failure_level: int = logging.WARNING,
        run_immediately: bool = True,
    ) -> None:
        """Create a cron job to periodically run a given task asynchronously.

        Args:
            name: The name used to identify the cron job in logs.
            interval: The interval in seconds between each run of the task.
            condition: A synchronous callable that determines whether the task should run.
            task: An asynchronous callable that defines the task to be run.
            stop: An optional event. Once set, the job returns instead of waiting for
                the next tick. Without it the job runs until its asyncio task is cancelled.
            failure_level: The log level used to report a failed run.
            run_immediately: Whether the first run happens right away or after one interval.
        """
        self.name = name
        self.interval = interval
        self.condition = condition
        self.task = task
        self.stop = stop
        self.failure_level = failure_level
        self.run_immediately = run_immediately

    def stopped(self) -> bool:
        """Return True if the stop event of this job has been set."""
        return self.stop is not None and self.stop.is_set()

    async def __call__(self) -> None:  # noqa: D102
        last_tick: float = time.time()

        if not self.run_immediately:
            await self._sleep(self.interval)
            last_tick = time.time()

        while not self.stopped():
            if self.condition():
                begin = time.perf_counter()
                try:
                    await self.task()
                except Exception as e:
                    logger.log(
                        self.failure_level,
                        f"Cron: failed to run task {self.name}",
                        extra={"error message": f"{e}"},
                    )
                else:
                    logger.debug(
                        f"Cron: successfully ran task {self.name}",
                        extra={"duration": time.perf_counter() - begin},
                    )

            sleep_duration = max(0, self.interval + last_tick - time.time())
            await self._sleep(sleep_duration)
            last_tick = time.time()

    async def _sleep(self, duration: float) -> None:
        """Sleep for `duration` seconds, waking up early if the stop event is set."""
        if self.stop is None:
            await asyncio.sleep(duration)
            return

        try:
            await asyncio.wait_for(self.stop.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
