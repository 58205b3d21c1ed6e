class WabridgeError(Exception):
    """Base class for ingest/resolution errors."""


class InvalidAddress(WabridgeError, ValueError):
    """Contact identifier could not be turned into a usable address."""

    def __init__(self, raw: str | None, reason: str = "must have at least 10 digits"):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid address {raw!r}: {reason}")


class ConflictRetryable(WabridgeError):
    """Uniqueness conflict whose winning row could not be re-read."""


class StoreUnavailable(WabridgeError):
    """Transient store failure; the event is dropped from the current batch."""


class TransportSendFailure(WabridgeError):
    """The transport refused or failed a send request."""

    def __init__(self, address: str, reason: str):
        self.address = address
        self.reason = reason
        super().__init__(f"Send to {address} failed: {reason}")
