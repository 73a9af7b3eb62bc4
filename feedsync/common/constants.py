"""Application constants."""

USER_AGENT = "feedsync/1.0 (+real-estate feed sync)"
COMMANDS = (
    "download",
    "import",
    "all",
    "status",
    "stop",
    "purge",
    "cleanup-agencies",
)
EXIT_SUCCESS = 0
EXIT_PARTIAL = 10
EXIT_HARD_FAIL = 20
JSON_LOG_FIELDS = (
    "timestamp",
    "run_id",
    "stage",
    "event",
    "status",
    "external_id",
    "chunk",
    "duration_ms",
    "rows_in",
    "rows_out",
    "error_code",
    "message",
)
TRACKING_STATUSES = ("active", "deleted", "error")
LIVE_STATUSES = ("active", "error")
DELETE_POLICIES = ("soft", "hard", "none")
MAX_RECORDED_ERRORS = 100
