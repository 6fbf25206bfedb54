"""Report runtime statistics of the current process as gauges."""

import gc
import resource
import sys
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from statskit.statsd import Statsd

PREFIX = "runtime."


def max_rss_bytes() -> int:
    """Return the peak resident set size of the process in bytes."""
    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS reports bytes.
    return max_rss if sys.platform == "darwin" else max_rss * 1024


async def report_sys_stats(st: "Statsd") -> None:
    """Set the runtime gauges of `st` to the current values."""
    st.gauge(f"{PREFIX}threads").set(threading.active_count())
    st.gauge(f"{PREFIX}mem.max_rss").set(max_rss_bytes())

    for generation, count in enumerate(gc.get_count()):
        st.gauge(f"{PREFIX}gc.gen{generation}.count").set(count)

    for generation, stats in enumerate(gc.get_stats()):
        st.gauge(f"{PREFIX}gc.gen{generation}.collections").set(stats["collections"])
        st.gauge(f"{PREFIX}gc.gen{generation}.collected").set(stats["collected"])
