"""Relay protocol constants (frame types, failure reasons and limits).

Room Relay Protocol v1
======================

Frames are JSON objects (WebSocket text frames) or CBOR maps (WebSocket binary
frames, selected with ``?codec=cbor`` at connect time). Every frame carries a
string ``type`` key, one of the F_* constants below.

Delivery contract:
    - Every ``join`` gets exactly one ``join_ack``
    - Every ``chat`` submission gets exactly one ``chat_ack``
    - A retransmitted envelope MUST reuse its ``id``; the relay acknowledges
      duplicates without broadcasting them again
"""

PROTOCOL_VERSION = 1

# ============================================================================
# Frame Types - Client -> Relay
# ============================================================================

F_JOIN = "join"  # Request room membership
# room: free-form room string (normalized by the relay)
# Response: F_JOIN_ACK

F_CHAT = "chat"  # Submit an envelope (also Relay -> Client broadcast)
# envelope: dict with ENV_* keys
# Response: F_CHAT_ACK to the sender, F_CHAT to every room member

F_PING = "ping"  # Liveness check
# Response: F_PONG

# ============================================================================
# Frame Types - Relay -> Client
# ============================================================================

F_JOIN_ACK = "join_ack"  # room, ok, reason?, allowedRooms?
F_CHAT_ACK = "chat_ack"  # id, ok, reason?, detail?
F_PONG = "pong"
F_ERROR = "error"  # error: human-readable description

CLIENT_FRAME_TYPES = frozenset({F_JOIN, F_CHAT, F_PING})

# ============================================================================
# Envelope Keys (wire names)
# ============================================================================

ENV_ID = "id"
ENV_ROOM = "room"
ENV_SENDER = "sender"
ENV_CREATED_AT = "createdAt"
ENV_BODY = "body"

# ============================================================================
# Failure Reasons
# ============================================================================

# Relay-issued
R_UNAUTHORIZED = "unauthorized"  # admission refused, connection never opened
R_INVALID_ROOM = "invalid_room"  # join: empty, too long or not a string
R_ROOM_NOT_ALLOWED = "room_not_allowed"  # join: not in the allowlist
R_INVALID_MESSAGE = "invalid_message"  # chat: malformed envelope
R_NOT_IN_ROOM = "not_in_room"  # chat: sender has not joined the target room

# Client-observed
R_NO_ACK = "no_ack"  # no acknowledgment before the timeout
R_RETRY_LIMIT = "retry_limit"  # pending message exceeded RETRY_MAX
R_JOIN_DENIED = "join_denied"  # replay could not re-join the target room
R_NOT_CONNECTED = "not_connected"
R_BAD_ACK = "bad_ack"

# ============================================================================
# Limits
# ============================================================================

MAX_ROOM_LEN = 64
MAX_SENDER_LEN = 64
MAX_BODY_LEN = 2048

DEDUP_CAPACITY = 5000

RETRY_MAX = 5
JOIN_TIMEOUT_S = 1.5
ACK_TIMEOUT_S = 5.0

MAX_FRAME_SIZE = 1024 * 16
OUTBOX_SIZE = 256

DEFAULT_ROOMS = (
    "emergency",
    "family",
    "vacant-1",
    "vacant-2",
    "vacant-3",
    "vacant-4",
)
