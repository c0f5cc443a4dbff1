"""Shared constants for the Confeed Socket.IO handlers.

The mutable runtime state itself lives on per-app component instances
(SessionRegistry, TypingTracker, UnreadLedger, AIParticipantPool, BroadcastHub)
built in socket_handlers.register_socketio_handlers and passed to the handler
modules, so nothing here is mutated at runtime.
"""

# The single logical broadcast room everyone joins on connect.
GLOBAL_ROOM = "global"

TYPING_TIMEOUT_SECONDS = 3.0

# Ghost participant timings
AI_REUSE_COOLDOWN_SECONDS = 10.0
AI_IDLE_EVICTION_SECONDS = 30 * 60.0
AI_SWEEP_INTERVAL_SECONDS = 5 * 60.0
AI_RESPONSE_COOLDOWN_SECONDS = 15.0
AI_REPLY_DELAY_RANGE = (2.0, 4.0)
AI_CONTEXT_WINDOW = 8
AI_MEMORY_SIZE = 10
AI_MAX_RESPONSE_CHARS = 500
AI_RECENT_MESSAGES = 20

# Events emitted to clients
EVT_PRESENCE_COUNT = "presence:count"
EVT_PRESENCE_LIST = "presence:list"
EVT_MESSAGE = "chat:message"
EVT_MESSAGE_EDIT = "chat:message_edit"
EVT_TYPING_STATUS = "chat:typing_status"
EVT_UNREAD = "chat:unread"
EVT_MENTION = "chat:mention"
EVT_ERROR = "chat:error"
