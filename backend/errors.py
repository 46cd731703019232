class WebDropError(Exception):
    """Base class for every error raised by the peer session and transfer layers."""
    pass


class NotInitialized(WebDropError):
    """Raised when an operation needs a live peer identity and none is open."""
    pass


class TransportError(WebDropError):
    """Raised when the underlying channel reports a failure."""
    pass


class TransferError(WebDropError):
    """Raised when reading, sending or reassembling a file fails."""
    pass


class ProtocolViolation(WebDropError):
    """Raised for a malformed or out-of-sequence protocol message."""
    pass
