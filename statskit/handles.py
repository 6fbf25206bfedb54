"""Metric handles returned by the Statsd facade.

Handles are small immutable values. They hold no data themselves, every call is
forwarded to the recorder (the `StatsdRegistry`) that created them, so two
handles with the same name and labels on the same recorder write to the same
series and compare equal.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from time import perf_counter
from typing import Iterator, Mapping, Protocol

# Labels are kept flat as alternating name/value entries, sorted by name.
Labels = tuple[str, ...]


class Recorder(Protocol):
    """Store the values recorded through metric handles."""

    def record_counter(
        self, name: str, labels: Labels, delta: float, sample_rate: float
    ) -> None:  # pragma: no cover # noqa: D102
        ...

    def record_observation(
        self, name: str, labels: Labels, value: float, sample_rate: float
    ) -> None:  # pragma: no cover # noqa: D102
        ...

    def set_gauge(
        self, name: str, labels: Labels, value: float, add: bool = False
    ) -> None:  # pragma: no cover # noqa: D102
        ...


def merge_labels(labels: Labels, extra: Mapping[str, str]) -> Labels:
    """Merge `extra` into the flat `labels`, returning a canonical flat tuple."""
    merged = dict(zip(labels[::2], labels[1::2]))
    merged.update(extra)
    return tuple(item for pair in sorted(merged.items()) for item in pair)


@dataclass(frozen=True)
class Counter:
    """A monotonically increasing value, reported as the sum since the last flush."""

    recorder: Recorder = field(repr=False)
    name: str
    sample_rate: float = 1.0
    labels: Labels = ()

    def add(self, delta: float = 1) -> None:
        """Increment the counter by `delta`."""
        self.recorder.record_counter(self.name, self.labels, delta, self.sample_rate)

    def with_labels(self, **labels: str) -> "Counter":
        """Return the counter for the same name with additional labels."""
        return replace(self, labels=merge_labels(self.labels, labels))


@dataclass(frozen=True)
class Histogram:
    """A distribution of observed values (timings, sizes, ...)."""

    recorder: Recorder = field(repr=False)
    name: str
    sample_rate: float = 1.0
    labels: Labels = ()

    def observe(self, value: float) -> None:
        """Record a single observation."""
        self.recorder.record_observation(self.name, self.labels, value, self.sample_rate)

    @contextmanager
    def time(self) -> Iterator[None]:
        """Observe the wall time spent in the block, in milliseconds."""
        started_at = perf_counter()
        try:
            yield
        finally:
            self.observe((perf_counter() - started_at) * 1000)

    def with_labels(self, **labels: str) -> "Histogram":
        """Return the histogram for the same name with additional labels."""
        return replace(self, labels=merge_labels(self.labels, labels))


@dataclass(frozen=True)
class Gauge:
    """The last value set, reported on every flush."""

    recorder: Recorder = field(repr=False)
    name: str
    labels: Labels = ()

    def set(self, value: float) -> None:
        """Set the gauge to `value`."""
        self.recorder.set_gauge(self.name, self.labels, value)

    def add(self, delta: float) -> None:
        """Adjust the gauge by `delta`."""
        self.recorder.set_gauge(self.name, self.labels, delta, add=True)

    def with_labels(self, **labels: str) -> "Gauge":
        """Return the gauge for the same name with additional labels."""
        return replace(self, labels=merge_labels(self.labels, labels))
