# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.

import asyncio
import logging
from typing import Any

import pytest

from statskit import cron
from tests.types import FilterCaplogFixture


@pytest.fixture(name="numbers")
def fixture_numbers() -> list[int]:
    """Return a list containing the number 1."""
    return [1]


@pytest.fixture(name="condition")
def fixture_condition(numbers: list[int]) -> cron.Condition:
    """Return a condition for a cron job."""

    def should_run() -> bool:
        """Returns True if there are no more than 2 items in numbers."""
        return len(numbers) <= 2

    return should_run


@pytest.fixture(name="task")
def fixture_task(numbers: list[int]) -> cron.Task:
    """Return a task for a cron job."""

    async def add_number() -> None:
        """Adds a new number to the list."""
        new_number = numbers[-1] + 1

        if new_number == 2:
            numbers.append(3)
            raise ValueError("Number 2 is not valid. Added 3 instead.")

        numbers.append(new_number)

    return add_number


@pytest.fixture(name="cron_job")
def fixture_cron_job(condition: cron.Condition, task: cron.Task) -> cron.Job:
    """Return a cron job."""

    return cron.Job(name="create_numbers", interval=0.1, condition=condition, task=task)


@pytest.mark.asyncio
async def test_cron(
    caplog: Any,
    filter_caplog: FilterCaplogFixture,
    cron_job: cron.Job,
    numbers: list[int],
) -> None:
    """Test for the cron Job implementation."""

    caplog.set_level(logging.DEBUG)

    cron_task = asyncio.create_task(cron_job())

    # Cancel the task after 0.5 seconds
    await asyncio.sleep(0.5)
    cron_task.cancel()

    assert numbers == [1, 3, 4]

    # Verify log messages for the different branches
    records = filter_caplog(caplog.records, "statskit.cron")
    assert [(record.levelno, record.getMessage()) for record in records] == [
        (logging.WARNING, "Cron: failed to run task create_numbers"),
        (logging.DEBUG, "Cron: successfully ran task create_numbers"),
    ]
    assert records[0].__dict__["error message"] == "Number 2 is not valid. Added 3 instead."


@pytest.mark.asyncio
async def test_cron_stops_when_stop_event_is_set() -> None:
    """Test that setting the stop event ends the job without waiting for the next tick."""
    stop = asyncio.Event()
    runs: list[int] = []

    async def record_run() -> None:
        runs.append(1)

    job = cron.Job(
        name="stoppable", interval=10, condition=lambda: True, task=record_run, stop=stop
    )
    job_task = asyncio.create_task(job())
    await asyncio.sleep(0.05)

    stop.set()
    await asyncio.wait_for(job_task, timeout=1)

    assert runs == [1]
    assert job.stopped()


@pytest.mark.asyncio
async def test_cron_waits_one_interval_before_first_run() -> None:
    """Test that the first run is delayed by one interval when asked to."""
    stop = asyncio.Event()
    runs: list[int] = []

    async def record_run() -> None:
        runs.append(1)

    job = cron.Job(
        name="delayed",
        interval=0.2,
        condition=lambda: True,
        task=record_run,
        stop=stop,
        run_immediately=False,
    )
    job_task = asyncio.create_task(job())

    await asyncio.sleep(0.05)
    assert runs == []

    await asyncio.sleep(0.25)
    assert runs == [1]

    stop.set()
    await asyncio.wait_for(job_task, timeout=1)


@pytest.mark.asyncio
async def test_cron_logs_failures_at_configured_level(
    caplog: Any, filter_caplog: FilterCaplogFixture
) -> None:
    """Test that failed runs are logged at the failure level and don't stop the job."""
    caplog.set_level(logging.DEBUG)
    stop = asyncio.Event()
    attempts: list[int] = []

    async def fail() -> None:
        attempts.append(1)
        raise RuntimeError("boom")

    job = cron.Job(
        name="failing",
        interval=0.05,
        condition=lambda: True,
        task=fail,
        stop=stop,
        failure_level=logging.ERROR,
    )
    job_task = asyncio.create_task(job())
    await asyncio.sleep(0.12)
    stop.set()
    await asyncio.wait_for(job_task, timeout=1)

    assert len(attempts) >= 2
    records = filter_caplog(caplog.records, "statskit.cron")
    assert len(records) == len(attempts)
    assert all(record.levelno == logging.ERROR for record in records)
    assert all(record.__dict__["error message"] == "boom" for record in records)
