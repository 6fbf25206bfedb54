"""Statskit specific exceptions."""


class DefaultStatsdUnsetError(RuntimeError):
    """Raised when falling back to the process-wide default Statsd after it was
    explicitly set to None.
    """

    pass
