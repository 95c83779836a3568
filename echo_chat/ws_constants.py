"""WebSocket protocol constants: message types and error strings.

Pure data module -- no imports, no logic. Safe to import from any echo_chat
module without risk of circular dependencies.
"""

# ── Client -> Server message types ────────────────────────────────────

MSG_AUTH = "auth"
MSG_WORLD_CHAT = "world_chat"
MSG_STREAM_CHAT = "stream_chat"
MSG_GROTTO_CHAT = "grotto_chat"
MSG_JOIN_STREAM = "join_stream"
MSG_LEAVE_STREAM = "leave_stream"
MSG_HEARTBEAT = "heartbeat"

# ── Server -> Client message types ────────────────────────────────────

MSG_AUTH_SUCCESS = "auth_success"
MSG_AUTH_ERROR = "auth_error"
MSG_WORLD_CHAT_MESSAGE = "world_chat_message"
MSG_STREAM_CHAT_MESSAGE = "stream_chat_message"
MSG_GROTTO_CHAT_MESSAGE = "grotto_chat_message"
MSG_STREAM_JOINED = "stream_joined"
MSG_STREAM_LEFT = "stream_left"
MSG_HEARTBEAT_ACK = "heartbeat_ack"
MSG_ERROR = "error"

# ── Chat kinds (persisted ``chat_type``) ──────────────────────────────

CHAT_WORLD = "world"
CHAT_STREAM = "stream"
CHAT_GROTTO = "grotto"

# ── Error strings sent in MSG_ERROR frames ────────────────────────────

ERR_INVALID_FORMAT = "Invalid message format"
ERR_MISSING_TYPE = "Missing message type"
ERR_UNKNOWN_TYPE = "Unknown message type"
ERR_AUTH_REQUIRED = "Authentication required"
ERR_RATE_LIMITED = "Message rate limit exceeded"
ERR_NOT_IN_STREAM = "You must join the stream first"
ERR_GROTTO_SIZE = "A grotto needs 2 to 10 participants"
ERR_SEND_FAILED = "Failed to send message"
ERR_INTERNAL = "An internal error occurred"
