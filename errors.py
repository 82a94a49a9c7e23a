from typing import Optional


class RoomcastError(Exception):
    """Base class for session-establishment failures."""


class RelayConnectError(RoomcastError):
    """A rendezvous connection attempt failed (timeout, refused, bad handshake)."""

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        self.url = url
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Could not connect to signaling server at {url}{detail}")


class DiscoveryExhausted(RoomcastError):
    """Every discovery attempt failed within the retry budget."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to reach a signaling server after {attempts} attempts. Last error: {last_error}"
        )


class RegistrationFailed(RoomcastError):
    pass


class LookupFailed(RoomcastError):
    pass


class NegotiationFailed(RoomcastError):
    pass


class ConnectivityLost(RoomcastError):
    pass


class CaptureUnavailable(RoomcastError):
    """Screen/audio capture could not be opened (permission denied, no device)."""
