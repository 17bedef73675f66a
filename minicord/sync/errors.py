"""Error taxonomy for the sync core."""


class SyncError(Exception):
    """Base class for every error raised by the sync core."""


class TransportError(SyncError):
    """Network or timeout failure on fetch or connect. Always retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(SyncError):
    """An inbound frame or history record could not be understood."""


class NotConnected(SyncError):
    """A send was attempted while the connection is not open."""


class StaleResult(SyncError):
    """An async result arrived for a channel session that is no longer active."""
