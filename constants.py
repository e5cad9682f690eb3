import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Broker the peer transport connects to
BROKER_URL = os.getenv("BROKER_URL", "ws://localhost:8000")
BROKER_HOST = os.getenv("HOST", "0.0.0.0")
BROKER_PORT = int(os.getenv("PORT", 8000))
PEER_TTL_SECONDS = int(os.getenv("PEER_TTL_SECONDS", 3600))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 86400))

HOST_PEER_PREFIX = "curryparty-host-"
CLIENT_PEER_PREFIX = "curryparty-peer-r"

# Protocol timings (milliseconds)
HEARTBEAT_INTERVAL_MS = int(os.getenv("HEARTBEAT_INTERVAL_MS", 1000))
LIVENESS_TIMEOUT_MS = int(os.getenv("LIVENESS_TIMEOUT_MS", 4000))
HEALTH_CHECK_INTERVAL_MS = int(os.getenv("HEALTH_CHECK_INTERVAL_MS", 2000))
SYNC_INTERVAL_MS = int(os.getenv("SYNC_INTERVAL_MS", 3000))
PERIODIC_SYNC = os.getenv("PERIODIC_SYNC", "true").lower() not in ("0", "false", "no")
DEBOUNCE_MS = int(os.getenv("DEBOUNCE_MS", 700))
SEEK_SETTLE_MS = int(os.getenv("SEEK_SETTLE_MS", 100))
SEEK_FOLLOWUP_MS = int(os.getenv("SEEK_FOLLOWUP_MS", 200))
REDIRECT_DELAY_MS = int(os.getenv("REDIRECT_DELAY_MS", 1500))
NOTIFICATION_MS = int(os.getenv("NOTIFICATION_MS", 3000))

MAX_RECONNECT_ATTEMPTS = int(os.getenv("MAX_RECONNECT_ATTEMPTS", 10))
MAX_INIT_ATTEMPTS = int(os.getenv("MAX_INIT_ATTEMPTS", 5))
RECONNECT_BASE_MS = int(os.getenv("RECONNECT_BASE_MS", 1000))
RECONNECT_MAX_MS = int(os.getenv("RECONNECT_MAX_MS", 30000))

# Drift thresholds (seconds)
SEEK_TOLERANCE_S = 0.5
SYNC_TOLERANCE_S = 2.0
RECONCILE_DRIFT_S = 3.0
