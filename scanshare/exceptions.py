"""Error types shared by the session service and the scanner client."""


class ScanShareError(Exception):
    """Base class for ScanShare errors."""


class SessionNotFoundError(ScanShareError):
    """No persisted session exists for the given short code."""

    def __init__(self, short_code: str):
        super().__init__(f"Session not found: {short_code}")
        self.short_code = short_code


class SyncError(ScanShareError):
    """A request made by the scanner client could not be completed."""


class RemoteSessionNotFoundError(SyncError):
    """The server answered 404 for the session's short code."""

    def __init__(self, short_code: str):
        super().__init__(f"Remote session not found: {short_code}")
        self.short_code = short_code


class SyncTransportError(SyncError):
    """Network failure, timeout or unexpected HTTP status."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code
