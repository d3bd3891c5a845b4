# =============================================================================
# livechannel -- Configuration
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .constants import (
    BEARER_PREFIX,
    DEFAULT_DELIMITER,
    RECONNECT_BASE_DELAY,
    RECONNECT_FACTOR,
    RECONNECT_MAX_DELAY,
    TOKEN_QUERY_PARAM,
    WS_RECONNECT_JITTER,
    WS_RECONNECT_THRESHOLD,
)

HeaderProvider = Callable[[], Mapping[str, str]]


@dataclass(frozen=True, slots=True)
class ReconnectConfig:
    """Configuration for automatic reconnection.

    Attributes:
        threshold: Failures absorbed before backoff scheduling begins.
        base_delay: Delay in seconds for the first scheduled retry.
        factor: Multiplier per attempt past the threshold.
        max_delay: Cap in seconds applied before jitter is added.
        jitter: Upper bound in seconds of the uniform random delay added
            to every scheduled retry.
    """

    threshold: int = WS_RECONNECT_THRESHOLD
    base_delay: float = RECONNECT_BASE_DELAY
    factor: float = RECONNECT_FACTOR
    max_delay: float = RECONNECT_MAX_DELAY
    jitter: float = WS_RECONNECT_JITTER

    def __post_init__(self) -> None:
        if self.threshold < 0:
            raise ValueError("threshold must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")


@dataclass
class ChannelConfig:
    """Everything a channel needs to (re)open its transport.

    The config is owned by one channel; use
    :meth:`PersistentChannel.reconfigure` to change it on a live channel.
    Changes take effect on the next connect.

    Attributes:
        url: Endpoint URL (``ws://``, ``wss://``, ``http://`` or ``https://``).
        token: Auth token. Browsers cannot attach headers to WebSocket or
            EventSource handshakes, so the token travels as a query param.
        token_param: Query parameter name used for *token*.
        query: Extra query parameters appended to *url*.
        headers: Static request headers (honoured by HTTP transports and the
            WebSocket handshake).
        header_provider: Called before every connect for fresh headers,
            e.g. a rotating auth header. Overrides *headers* on conflict.
        reconnect: Backoff configuration. ``None`` selects the channel
            variant's defaults.
        max_queued_messages: Outbound queue cap, ``None`` for unbounded.
        max_messages: History size for :attr:`PersistentChannel.messages`,
            ``None`` for unbounded, ``0`` to keep no history.
        delimiter: Frame separator for delimiter-framed HTTP streams.
    """

    url: str
    token: str | None = None
    token_param: str = TOKEN_QUERY_PARAM
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    header_provider: HeaderProvider | None = None
    reconnect: ReconnectConfig | None = None
    max_queued_messages: int | None = None
    max_messages: int | None = None
    delimiter: str = DEFAULT_DELIMITER

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url is required")
        if self.max_queued_messages is not None and self.max_queued_messages < 0:
            raise ValueError("max_queued_messages must be >= 0")
        if self.max_messages is not None and self.max_messages < 0:
            raise ValueError("max_messages must be >= 0")
        if not self.delimiter:
            raise ValueError("delimiter must be a non-empty string")

    def with_changes(self, **changes: Any) -> ChannelConfig:
        return replace(self, **changes)

    def build_url(self) -> str:
        """Return *url* with :attr:`query` and the auth token appended."""
        parts = urlsplit(self.url)
        params = parse_qsl(parts.query, keep_blank_values=True)
        params.extend(self.query.items())

        token = _strip_bearer(self.token)
        if token:
            params = [(k, v) for k, v in params if k != self.token_param]
            params.append((self.token_param, token))

        return urlunsplit(parts._replace(query=urlencode(params)))

    def build_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.header_provider is not None:
            headers.update(self.header_provider())
        return headers


def _strip_bearer(token: str | None) -> str | None:
    if token and token[: len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        return token[len(BEARER_PREFIX) :].strip()
    return token
