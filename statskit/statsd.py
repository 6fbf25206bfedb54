"""The Statsd facade.

A `Statsd` creates counters, histograms and gauges sharing a common prefix and
static labels, and, when given a collector address, reports them to it from a
background asyncio task.

A process-wide default is available through `get_default()`. It is created on
first use with an empty configuration, so it never sends anything anywhere and
is safe to use in tests. Applications should install a configured one early in
their startup, usually with `configure_metrics()`::

    stop = asyncio.Event()
    await configure_metrics(stop)
    ...
    StatsdRef().counter("requests").add()
    ...
    stop.set()

Code receiving an optional `Statsd` can wrap it in a `StatsdRef`, whose metric
factories fall back to the default when the wrapped value is None.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Mapping

from statskit import cron
from statskit.config import settings
from statskit.exceptions import DefaultStatsdUnsetError
from statskit.handles import Counter, Gauge, Histogram
from statskit.registry import StatsdRegistry
from statskit.sysstats import report_sys_stats

logger = logging.getLogger(__name__)

# Interval in seconds between two reports to the StatsD collector. It is read
# when a Statsd with an address is created.
REPORTER_TICKER_INTERVAL: float = 60.0

PREFIX_SEPARATOR = "."


@dataclass(frozen=True)
class StatsdConfig:
    """The configuration used by `new_statsd`.

    Attributes:
        prefix: The common prefix of all metrics created from the Statsd. A "."
            is appended when it's not empty and doesn't end with one.
        default_sample_rate: The sample rate used when creating counters and
            histograms.
        address: The UDP address ("host:port") of the StatsD collector. When
            empty, no background reporting is started: metrics are still kept in
            memory but never sent.
        log_level: The level used to log failures of the background reporter.
        labels: Labels attached to every metric created from the Statsd. Use
            `with_labels` on a metric for labels only some metrics need.
        dev_logger: Log the encoded datagrams instead of sending them.
    """

    prefix: str = ""
    default_sample_rate: float = 1.0
    address: str = ""
    log_level: int = logging.WARNING
    labels: Mapping[str, str] = field(default_factory=dict)
    dev_logger: bool = False

    @classmethod
    def from_settings(cls, metrics: Any) -> "StatsdConfig":
        """Build a config from the `metrics` section of the settings."""
        return cls(
            prefix=metrics.prefix,
            default_sample_rate=float(metrics.default_sample_rate),
            address=metrics.address,
            log_level=logging.getLevelName(metrics.log_level),
            labels={str(name): str(value) for name, value in metrics.labels.items()},
            dev_logger=metrics.dev_logger,
        )


def normalize_prefix(prefix: str) -> str:
    """Make sure a non-empty prefix ends with the separator."""
    if prefix and not prefix.endswith(PREFIX_SEPARATOR):
        return prefix + PREFIX_SEPARATOR
    return prefix


def flatten_labels(labels: Mapping[str, str]) -> list[str]:
    """Flatten a label mapping into alternating name/value entries."""
    flat: list[str] = []
    for name, value in labels.items():
        flat.extend((name, value))
    return flat


class Statsd:
    """Create metrics under a common prefix and report them to StatsD.

    Use `new_statsd` to create one. The underlying registry is exposed as
    `statsd` for metrics needing a sample rate other than the default one.
    """

    statsd: StatsdRegistry

    def __init__(
        self,
        statsd: StatsdRegistry,
        sample_rate: float,
        stop: asyncio.Event | None = None,
    ) -> None:
        self.statsd = statsd
        self._sample_rate = sample_rate
        self._stop = stop
        self._reporter_task: asyncio.Task | None = None
        self._sys_stats_task: asyncio.Task | None = None

    @property
    def prefix(self) -> str:
        """Return the normalized prefix of the metrics."""
        return self.statsd.prefix

    @property
    def sample_rate(self) -> float:
        """Return the default sample rate of counters and histograms."""
        return self._sample_rate

    @property
    def reporter_task(self) -> asyncio.Task | None:
        """Return the background reporting task, None if it wasn't started."""
        return self._reporter_task

    def counter(self, name: str) -> Counter:
        """Return the counter `name`, using the default sample rate."""
        return self.statsd.new_counter(name, self._sample_rate)

    def histogram(self, name: str) -> Histogram:
        """Return the histogram `name`, using the default sample rate."""
        return self.statsd.new_timing(name, self._sample_rate)

    def gauge(self, name: str) -> Gauge:
        """Return the gauge `name`."""
        return self.statsd.new_gauge(name)

    def run_sys_stats(
        self, stop: asyncio.Event | None = None, interval: float | None = None
    ) -> asyncio.Task:
        """Periodically report runtime statistics of the process as gauges.

        Must be called with a running event loop. The task stops when `stop` (or
        the stop event this Statsd was created with) is set.
        """
        job = cron.Job(
            name="statsd-sys-stats",
            interval=interval if interval is not None else REPORTER_TICKER_INTERVAL,
            condition=lambda: True,
            task=partial(report_sys_stats, self),
            stop=stop if stop is not None else self._stop,
            failure_level=self.statsd.log_level,
        )
        self._sys_stats_task = asyncio.create_task(job(), name="statsd-sys-stats")
        return self._sys_stats_task

    def _start_reporter(self, config: StatsdConfig, interval: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop, metrics will not be reported",
                extra={"address": config.address},
            )
            return

        # Keep a reference to the task, asyncio's runtime only holds a weak one.
        self._reporter_task = loop.create_task(
            self.statsd.send_loop(self._stop, interval, config.address, config.dev_logger),
            name="statsd-reporter",
        )


def new_statsd(config: StatsdConfig, stop: asyncio.Event | None = None) -> Statsd:
    """Create a Statsd. It never fails.

    When `config.address` is not empty, a background task reporting to it every
    `REPORTER_TICKER_INTERVAL` seconds is started on the running event loop. It
    ends once `stop` is set or when the task is cancelled.
    """
    registry = StatsdRegistry(
        normalize_prefix(config.prefix),
        config.log_level,
        *flatten_labels(config.labels),
    )
    st = Statsd(registry, config.default_sample_rate, stop)
    if config.address:
        st._start_reporter(config, REPORTER_TICKER_INTERVAL)
    return st


_default_lock = threading.Lock()
_default: Statsd | None = None
_default_set = False


def get_default() -> Statsd:
    """Return the process-wide default Statsd, creating a local-only one on first use.

    Raises:
        DefaultStatsdUnsetError: if the default was explicitly set to None.
    """
    global _default, _default_set

    if not _default_set:
        with _default_lock:
            if not _default_set:
                _default = new_statsd(StatsdConfig())
                _default_set = True

    if _default is None:
        raise DefaultStatsdUnsetError("The default Statsd was set to None")
    return _default


def set_default(st: Statsd | None) -> None:
    """Replace the process-wide default Statsd.

    Setting None is allowed but makes every later fallback raise
    `DefaultStatsdUnsetError`.
    """
    global _default, _default_set

    with _default_lock:
        _default = st
        _default_set = True


def reset_default() -> None:
    """Drop the current default, the next `get_default` creates a new local-only one."""
    global _default, _default_set

    with _default_lock:
        _default = None
        _default_set = False


def resolve(st: Statsd | None) -> Statsd:
    """Return `st`, or the process-wide default if it's None."""
    return get_default() if st is None else st


class StatsdRef:
    """A Statsd that may be missing.

    The metric factories resolve the wrapped Statsd first and fall back to the
    default one when it's None. Direct access to the registry through `statsd`
    does not fall back:

        ref = StatsdRef(None)
        ref.counter("my-counter").add(1)  # uses get_default()
        ref.statsd.new_counter("my-counter", 0.5)  # raises AttributeError
    """

    __slots__ = ("_st",)

    def __init__(self, st: Statsd | None = None) -> None:
        self._st = st

    @property
    def statsd(self) -> StatsdRegistry:
        """Return the registry of the wrapped Statsd."""
        return self._st.statsd  # type: ignore[union-attr]

    def resolve(self) -> Statsd:
        """Return the wrapped Statsd or the default one."""
        return resolve(self._st)

    def counter(self, name: str) -> Counter:  # noqa: D102
        return self.resolve().counter(name)

    def histogram(self, name: str) -> Histogram:  # noqa: D102
        return self.resolve().histogram(name)

    def gauge(self, name: str) -> Gauge:  # noqa: D102
        return self.resolve().gauge(name)


async def configure_metrics(stop: asyncio.Event | None = None) -> Statsd:
    """Create a Statsd from the settings and install it as the default. Used in
    application startup.
    """
    global REPORTER_TICKER_INTERVAL

    REPORTER_TICKER_INTERVAL = float(settings.metrics.flush_interval_sec)
    st = new_statsd(StatsdConfig.from_settings(settings.metrics), stop)
    set_default(st)
    return st
