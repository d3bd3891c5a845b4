# =============================================================================
# livechannel -- Payload Serialization
# =============================================================================
#
# Outgoing: str and binary pass through, containers become JSON text.
# Incoming: text frames are JSON when they parse, plain text otherwise.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

from .errors import UnsupportedPayloadError

Payload = str | bytes | bytearray | memoryview

try:
    import orjson

    def json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


def encode_payload(data: Any) -> Payload:
    """Serialize *data* for transmission.

    Raises:
        UnsupportedPayloadError: For scalars and other non-container types.
    """
    if isinstance(data, (str, bytes, bytearray, memoryview)):
        return data
    if data is None or isinstance(data, (dict, list, tuple)):
        try:
            return json_dumps(data)
        except TypeError as exc:
            raise UnsupportedPayloadError(data) from exc
    raise UnsupportedPayloadError(data)


def parse_text(text: str) -> Any:
    """Parse trimmed *text* as JSON, falling back to the trimmed text."""
    stripped = text.strip()
    try:
        return json_loads(stripped)
    except (ValueError, RecursionError):
        # Nesting too deep for the stdlib parser is still just text
        return stripped


def decode_payload(raw: str | bytes) -> Any:
    """Decode an inbound message; binary frames are returned unchanged."""
    if isinstance(raw, str):
        return parse_text(raw)
    return raw
