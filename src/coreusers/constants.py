"""Default policy constants for channel sync and the core-users report."""

SYNC_WINDOW_DAYS = 90
SYNC_COOLDOWN_DAYS = 1
TOP_USERS_AMOUNT = 10

# Post age bands driving comment re-sync.
FRESH_POST_DAYS = 3  # younger: always re-fetch
MEDIUM_POST_DAYS = 10  # younger: re-fetch every MEDIUM_RESYNC_INTERVAL_HOURS
MEDIUM_RESYNC_INTERVAL_HOURS = 48

# Telegram returns at most 100 messages per history request.
PAGE_LIMIT = 100
MAX_POST_PAGES = 50
MAX_COMMENT_PAGES = 200

SYNC_TIMEOUT_SECONDS = 300.0
