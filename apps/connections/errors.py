"""
Error taxonomy for the connection lifecycle.
Only PairingFailed is raised to callers of start/reconnect; timeout and cancellation are
reported as PairingResult outcomes. Polling, migration and bootstrap errors are logged and
recovered where they happen.
"""
from typing import Optional


class ConnectionLifecycleError(Exception):
    """Base class; carries the connection id when one is known."""

    def __init__(self, message: str, connection_id: Optional[str] = None):
        self.connection_id = connection_id
        super().__init__(message)


class GatewayError(ConnectionLifecycleError):
    """Provider control-plane call failed (HTTP error, timeout, unparseable body)."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: Optional[int] = None,
        session_id: Optional[str] = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.session_id = session_id
        super().__init__(message)


class PairingFailed(ConnectionLifecycleError):
    """Init/reconnect errored or returned no QR code."""


class PollingError(ConnectionLifecycleError):
    """Transient status-check failure; the next tick retries."""


class PairingTimeout(ConnectionLifecycleError):
    """Deadline passed while still not connected."""


class PairingCancelled(ConnectionLifecycleError):
    """Caller abandoned the attempt."""


class MigrationError(ConnectionLifecycleError):
    """Re-pointing conversations failed; nothing was committed."""


class BootstrapError(ConnectionLifecycleError):
    """Default department could not be created."""


class InvalidState(ConnectionLifecycleError):
    """Operation not allowed in the connection's current state (e.g. deleting a live connection)."""


class ConnectionNotFound(ConnectionLifecycleError):
    pass
