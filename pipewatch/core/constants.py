"""
Constants
Centralised storage for monitor statuses, event types and polling limits.
"""
MAX_CONCURRENT_MONITORS = 10

# Milliseconds
DEFAULT_POLL_INTERVAL_MS = 10000
MAX_POLL_INTERVAL_MS = 30000
GRACE_PERIOD_MS = 30000
STALL_TIMEOUT_MS = 90000
DEFAULT_MAX_DURATION_MS = 1800000

BACKOFF_FACTOR = 1.5
BACKOFF_MAX_EXPONENT = 4

LOG_TAIL_LINES = 2000
PROMPT_LOG_LINES = 200

# Monitor statuses
STATUS_POLLING = "polling"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_STALLED = "stalled"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"

TERMINAL_STATUSES = frozenset({
    STATUS_SUCCESS,
    STATUS_FAILED,
    STATUS_STALLED,
    STATUS_ERROR,
    STATUS_STOPPED,
})

# Statuses a session's UI still cares about
SESSION_VISIBLE_STATUSES = frozenset({STATUS_POLLING, STATUS_SUCCESS, STATUS_FAILED})

# Broadcast event types
EVENT_STATUS = "pipeline:status"
EVENT_STALLED = "pipeline:stalled"
EVENT_COMPLETE = "pipeline:complete"
EVENT_ERROR = "pipeline:error"
