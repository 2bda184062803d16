"""Connectivity error taxonomy.

Errors are classified by cause. Probe errors are raised inside probe
implementations and converted into failure results at the probe boundary;
they never reach the scheduler.
"""


class ConnectivityError(Exception):
    """Base exception for connectivity tracking."""


class ProbeError(ConnectivityError):
    """A health check against a dependency did not succeed."""


class ProbeTimeout(ProbeError):
    """Health check exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Health check timed out after {timeout_seconds:g}s")


class ProbeConnectionRefused(ProbeError):
    """Dependency refused or dropped the connection."""


class ProbeProtocolError(ProbeError):
    """Dependency answered with a malformed or unexpected response."""


class CallbackReportedFailure(ConnectivityError):
    """Client library callback reported a failed operation."""

    def __init__(self, source: str, detail: object = None):
        self.source = source
        self.detail = detail
        message = f"{source}: {detail}" if detail else source
        super().__init__(message)


class UnknownDependencyId(ConnectivityError, ValueError):
    """Identifier does not name a tracked dependency."""

    def __init__(self, dependency: object):
        self.dependency = dependency
        super().__init__(f"Unknown dependency: {dependency}")
