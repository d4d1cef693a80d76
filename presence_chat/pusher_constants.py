"""Pusher Channels protocol constants: event names and close codes.

Pure data module -- no imports, no logic.
"""

# ── Client-visible channel events (bound with Channel.bind) ───────────

EVT_SUBSCRIPTION_SUCCEEDED = "pusher:subscription_succeeded"
EVT_SUBSCRIPTION_ERROR = "pusher:subscription_error"
EVT_MEMBER_ADDED = "pusher:member_added"
EVT_MEMBER_REMOVED = "pusher:member_removed"

# ── Connection-level events ───────────────────────────────────────────

EVT_CONNECTION_ESTABLISHED = "pusher:connection_established"
EVT_ERROR = "pusher:error"
EVT_PING = "pusher:ping"
EVT_PONG = "pusher:pong"
EVT_SUBSCRIBE = "pusher:subscribe"
EVT_UNSUBSCRIBE = "pusher:unsubscribe"

# ── Internal events, translated before reaching bound callbacks ───────

INT_SUBSCRIPTION_SUCCEEDED = "pusher_internal:subscription_succeeded"
INT_MEMBER_ADDED = "pusher_internal:member_added"
INT_MEMBER_REMOVED = "pusher_internal:member_removed"

# ── Channel prefixes ──────────────────────────────────────────────────

PRESENCE_PREFIX = "presence-"
PRIVATE_PREFIX = "private-"

# ── Close codes (ranges) ──────────────────────────────────────────────

CLOSE_NO_RECONNECT = range(4000, 4100)
CLOSE_RECONNECT_BACKOFF = range(4100, 4200)
CLOSE_RECONNECT_IMMEDIATE = range(4200, 4300)

PROTOCOL_VERSION = 7
