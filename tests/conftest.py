# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.

import asyncio
import os
from logging import LogRecord
from typing import AsyncIterator, Iterator

import pytest
import pytest_asyncio

# Settings are loaded lazily, so this applies to every test.
os.environ.setdefault("STATSKIT_ENV", "testing")

from statskit import statsd  # noqa: E402

from tests.collector import Collector  # noqa: E402
from tests.types import FilterCaplogFixture  # noqa: E402


@pytest.fixture(scope="session", name="filter_caplog")
def fixture_filter_caplog() -> FilterCaplogFixture:
    """
    Return a function that will filter pytest captured log records for a given logger
    name
    """

    def filter_caplog(records: list[LogRecord], logger_name: str) -> list[LogRecord]:
        """
        Filter pytest captured log records for a given logger name
        """
        return [record for record in records if record.name == logger_name]

    return filter_caplog


@pytest.fixture(autouse=True)
def fixture_reset_default() -> Iterator[None]:
    """Give every test a fresh process-wide default Statsd."""
    statsd.reset_default()
    yield
    statsd.reset_default()


@pytest_asyncio.fixture(name="collector")
async def fixture_collector() -> AsyncIterator[Collector]:
    """Listen for datagrams on a random local port."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        Collector, local_addr=("127.0.0.1", 0)
    )
    protocol.address = f"127.0.0.1:{transport.get_extra_info('sockname')[1]}"
    yield protocol
    transport.close()
