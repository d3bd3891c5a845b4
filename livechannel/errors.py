# =============================================================================
# livechannel -- Error Types
# =============================================================================


class ChannelError(Exception):
    """Base exception for all livechannel errors."""


class TransportError(ChannelError):
    """The underlying transport reported an error event."""


class TransportClosedError(TransportError):
    """The transport closed with an abnormal close code."""

    def __init__(self, code: int, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed: {code} {reason}".rstrip())


class ChannelClosedError(ChannelError):
    """The channel was closed by its owner."""


class ChannelUsageError(ChannelError):
    """An operation the channel does not support was requested."""


class UnsupportedPayloadError(ChannelError, TypeError):
    """``send()`` was called with a value that cannot be serialized."""

    def __init__(self, data: object) -> None:
        self.data = data
        super().__init__(f"Unsupported data type for channel: {type(data).__name__}")


class StreamDecodeError(ChannelError):
    """A transform or consumer callback failed while decoding a stream."""
