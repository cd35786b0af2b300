"""
errors.py holds the exceptions raised by wanqos.

Only conditions that abort something are exceptions. Route misses, admission
denials and queue overflows are counted where they happen (see trace.DropReason)
and surface through the run report instead.
"""


class WanQosError(Exception):
    """Base class for every error raised by wanqos."""


class ConfigurationError(WanQosError, ValueError):
    """An invalid startup parameter. Raised before the simulation runs."""


class TransportError(WanQosError):
    """The transport a generator needs is unavailable when it starts.

    Fatal for that generator only; the rest of the run continues.
    """
