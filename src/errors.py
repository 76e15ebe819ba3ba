"""
Error taxonomy for discovery and telemetry
"""

from typing import Optional


class CockpitError(Exception):
    """Base class for all cockpit errors"""


# ================== DISCOVERY ==================

class DiscoveryFailure(CockpitError):
    """No verifiable language server candidate could be found"""

    def __init__(self, message: str, diagnostics=None, guidance: Optional[list] = None):
        super().__init__(message)
        self.diagnostics = diagnostics
        self.guidance = guidance or []


class ProcessCommandError(DiscoveryFailure):
    """A process or port listing command failed to run"""

    def __init__(self, message: str, command: str = "", stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.command = command
        self.stderr = stderr
        self.returncode = returncode


class ProcessCommandTimeout(ProcessCommandError):
    """A process or port listing command exceeded its timeout"""


# ================== TELEMETRY ==================

class TelemetryError(CockpitError):
    """Base class for errors raised while talking to the language server"""


class ConnectionFailure(TelemetryError):
    """Refused, timed out, or corrupted/empty response (transient)"""


class EndpointNotFound(ConnectionFailure):
    """Neither the primary nor the fallback endpoint exists on this port"""


class ReadinessTimeout(TelemetryError):
    """Readiness gate window expired (soft, never raised to callers)"""


class ServerReportedError(TelemetryError):
    """The language server answered with its own error message"""


class DecodeError(TelemetryError):
    """The response has an unexpected structure"""


class ServiceNotInitializedError(DecodeError):
    """The language server is up but has not finished initializing"""


def is_server_error(error: BaseException) -> bool:
    """True for errors reported by the language server itself"""
    return isinstance(error, ServerReportedError)
