"""Per-session delivery errors. Each one closes only the session it occurred on."""


class StreamingError(Exception):
    """Base error for the session layer."""


class TransportError(StreamingError):
    """The transport reported a failed send."""


class ProtocolViolation(StreamingError):
    """Client sent a malformed or out-of-contract control message."""
