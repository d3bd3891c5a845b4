# =============================================================================
# livechannel -- Constants
# =============================================================================

# -- Reconnection (seconds) ---------------------------------------------------

RECONNECT_BASE_DELAY = 0.5
RECONNECT_FACTOR = 2.0
RECONNECT_MAX_DELAY = 30.0

# WebSocket channels react to the first failure; event streams let the
# transport's own retry absorb a few blips before backing off.
WS_RECONNECT_THRESHOLD = 0
WS_RECONNECT_JITTER = 0.5
SSE_RECONNECT_THRESHOLD = 3
SSE_RECONNECT_JITTER = 0.25

# -- Timing (seconds) --------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
SSE_DEFAULT_RETRY = 3.0

# -- Framing -------------------------------------------------------------------

DEFAULT_DELIMITER = "\n"
MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Auth ----------------------------------------------------------------------

TOKEN_QUERY_PARAM = "token"
BEARER_PREFIX = "bearer "

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_ABNORMAL = 1006
