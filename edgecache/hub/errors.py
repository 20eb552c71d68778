"""Exception types raised by the hub.

Kept HTTP-agnostic so the API layer can map them to status codes.
"""


class EdgeCacheError(Exception):
    """Base class for edgecache failures."""


class NetworkUnavailable(EdgeCacheError):
    """Raised when a network fetch cannot complete (offline, DNS, refused, timeout)."""


class InstallationFailure(EdgeCacheError):
    """Raised when any precache population step fails during install."""


class MessagingError(EdgeCacheError):
    """Raised for inter-instance messaging failures."""


class ReplyTimeout(MessagingError):
    """Raised when a correlated message gets no reply before its deadline."""

    def __init__(self, message_id: int, instance_id: str, timeout: float):
        super().__init__(f"No reply to message {message_id} from instance {instance_id} within {timeout}s")
        self.message_id = message_id
        self.instance_id = instance_id
        self.timeout = timeout
