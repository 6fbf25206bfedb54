"""In-memory aggregate of StatsD metrics and the loop reporting it to a collector."""

import asyncio
import logging
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Mapping

import aiodogstatsd

from statskit import cron
from statskit.handles import Counter, Gauge, Histogram, Labels

logger = logging.getLogger(__name__)

# Type definition for tags in aiodogstatsd metrics
MetricTags = Mapping[str, float | int | str]

# A series is a fully prefixed metric name and its flat labels.
SeriesKey = tuple[str, Labels]

# Maximum number of observations kept per histogram series between two flushes.
MAX_OBSERVATIONS = 10_000

# Upper bound on how long the StatsD client waits for queued metrics before checking
# whether it was closed. It bounds how long a stopping reporter takes to exit.
READ_TIMEOUT = 0.1

# Upper bound on how long a stopping reporter waits for the client to close.
CLOSE_TIMEOUT = 1.0


def parse_address(address: str) -> tuple[str, int]:
    """Split a "host:port" address. IPv6 hosts may be wrapped in brackets."""
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or int(port) > 65535:
        raise ValueError(f"Invalid statsd address: {address!r}. Should be 'host:port'.")
    return host.strip("[]"), int(port)


def _sampled(sample_rate: float) -> bool:
    if sample_rate >= 1:
        return True
    return sample_rate > 0 and random.random() < sample_rate


def _tags(labels: Labels) -> MetricTags | None:
    return dict(zip(labels[::2], labels[1::2])) if labels else None


@dataclass
class Batch:
    """Metrics drained from a registry, ready to be sent."""

    counters: dict[SeriesKey, float] = field(default_factory=dict)
    gauges: dict[SeriesKey, float] = field(default_factory=dict)
    histograms: dict[SeriesKey, list[tuple[float, float]]] = field(default_factory=dict)

    def __len__(self) -> int:
        return (
            len(self.counters)
            + len(self.gauges)
            + sum(len(observations) for observations in self.histograms.values())
        )

    def emit(self, client: aiodogstatsd.Client) -> None:
        """Hand every metric of the batch to the StatsD client."""
        for (name, labels), value in self.counters.items():
            client.increment(name, value=value, tags=_tags(labels))

        for (name, labels), value in self.gauges.items():
            client.gauge(name, value=value, tags=_tags(labels))

        for (name, labels), observations in self.histograms.items():
            for value, sample_rate in observations:
                client.histogram(name, value=value, tags=_tags(labels), sample_rate=sample_rate)


class StatsdRegistry:
    """Thread-safe in-memory store for counters, gauges and histograms.

    Counters are sampled when recorded: a kept delta is scaled by the inverse of
    the sample rate, so the reported sum stays unbiased. Histogram observations
    are all kept and sent with their sample rate, leaving the per-observation
    decision (and the `|@rate` annotation) to aiodogstatsd. A sample rate of 0
    or less disables recording for both.

    The static labels given at creation are sent as constant tags on every
    metric; labels added through `with_labels` are part of the series.
    """

    prefix: str
    log_level: int
    labels: Labels
    max_observations: int

    def __init__(
        self,
        prefix: str,
        log_level: int,
        *labels: str,
        max_observations: int = MAX_OBSERVATIONS,
    ) -> None:
        if len(labels) % 2:
            raise ValueError(f"Labels should come in name/value pairs, got {labels!r}")

        self.prefix = prefix
        self.log_level = log_level
        self.labels = labels
        self.max_observations = max_observations
        self._lock = threading.Lock()
        self._counters: dict[SeriesKey, float] = {}
        self._gauges: dict[SeriesKey, float] = {}
        self._histograms: dict[SeriesKey, deque[tuple[float, float]]] = {}

    @property
    def constant_tags(self) -> MetricTags:
        """Return the static labels as StatsD tags."""
        return dict(zip(self.labels[::2], self.labels[1::2]))

    def new_counter(self, name: str, sample_rate: float) -> Counter:
        """Return a counter for `name` recorded with `sample_rate`."""
        return Counter(self, name, sample_rate)

    def new_timing(self, name: str, sample_rate: float) -> Histogram:
        """Return a histogram for `name` recorded with `sample_rate`."""
        return Histogram(self, name, sample_rate)

    def new_gauge(self, name: str) -> Gauge:
        """Return a gauge for `name`."""
        return Gauge(self, name)

    def record_counter(self, name: str, labels: Labels, delta: float, sample_rate: float) -> None:
        """Add `delta` to a counter series, subject to sampling."""
        if not _sampled(sample_rate):
            return
        if sample_rate < 1:
            delta = delta / sample_rate

        key = (self.prefix + name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + delta

    def record_observation(
        self, name: str, labels: Labels, value: float, sample_rate: float
    ) -> None:
        """Append an observation to a histogram series."""
        if sample_rate <= 0:
            return

        key = (self.prefix + name, labels)
        with self._lock:
            observations = self._histograms.get(key)
            if observations is None:
                observations = self._histograms[key] = deque(maxlen=self.max_observations)
            observations.append((value, min(sample_rate, 1.0)))

    def set_gauge(self, name: str, labels: Labels, value: float, add: bool = False) -> None:
        """Set a gauge series to `value`, or adjust it by `value` if `add` is True."""
        key = (self.prefix + name, labels)
        with self._lock:
            self._gauges[key] = self._gauges.get(key, 0) + value if add else value

    def drain(self) -> Batch:
        """Take the metrics recorded since the last drain.

        Counters and histograms are reset, gauges keep their last value.
        """
        with self._lock:
            batch = Batch(
                counters=self._counters,
                gauges=dict(self._gauges),
                histograms={key: list(obs) for key, obs in self._histograms.items()},
            )
            self._counters = {}
            self._histograms = {}
        return batch

    async def send_loop(
        self,
        stop: asyncio.Event | None,
        interval: float,
        address: str,
        dev_logger: bool = False,
    ) -> None:
        """Send the drained metrics to `address` every `interval` seconds.

        Runs until `stop` is set or the task running it is cancelled. Failures are
        logged at the registry log level and retried on the next tick; metrics
        recorded after the last successful send may be lost on shutdown.
        """
        reporter = _Reporter(self, address, dev_logger, read_timeout=min(interval, READ_TIMEOUT))
        job = cron.Job(
            name="statsd-report",
            interval=interval,
            condition=lambda: True,
            task=reporter.send,
            stop=stop,
            failure_level=self.log_level,
            run_immediately=False,
        )
        try:
            await job()
        finally:
            await reporter.close()


class _Reporter:
    """Connect lazily to the collector and forward drained batches to it."""

    client: aiodogstatsd.Client | None

    def __init__(
        self,
        registry: StatsdRegistry,
        address: str,
        dev_logger: bool,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.address = address
        self.dev_logger = dev_logger
        self.read_timeout = read_timeout
        self.client = None

    async def send(self) -> None:
        client = await self._connect()
        batch = self.registry.drain()
        batch.emit(client)
        logger.debug("sent metrics", extra={"metrics": len(batch), "address": self.address})

    async def close(self) -> None:
        if self.client is None:
            return

        client, self.client = self.client, None
        # Shielded: cancelling the reporter must not cancel the futures the client
        # waits on while it shuts down.
        try:
            await asyncio.wait_for(asyncio.shield(client.close()), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.log(
                self.registry.log_level,
                "Timed out closing the statsd client",
                extra={"address": self.address},
            )

    async def _connect(self) -> aiodogstatsd.Client:
        if self.client is None:
            host, port = parse_address(self.address)
            client = aiodogstatsd.Client(
                host=host,
                port=port,
                constant_tags=self.registry.constant_tags,
                read_timeout=self.read_timeout,
            )
            if self.dev_logger:
                client._protocol = _LocalDatagramLogger()
            await client.connect()
            self.client = client
        return self.client


class _LocalDatagramLogger(aiodogstatsd.client.DatagramProtocol):
    """This class can be used to override the default DatagramProtocol.
    Instead of writing bytes to a socket, it logs them.
    The purpose is to make it easy to see the metrics in development environments.
    """

    def send(self, data: bytes) -> None:
        logger.debug("sending metrics", extra={"data": data.decode("utf8")})

    def error_received(self, exc) -> None:
        logger.exception(exc)
