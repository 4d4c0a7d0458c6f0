import os

# --- Configuration ---
# The aggregator database file path.
# Relative by default, so it is created in the current working directory.
# It can be overridden with the TRU_MONITOR_DB_PATH environment variable.
DATABASE_FILE = os.getenv('TRU_MONITOR_DB_PATH', 'aggregator.db')

# Node credentials (nodeId + salt). Persisted so hashes stay stable across restarts.
CREDENTIALS_FILE = os.getenv('TRU_MONITOR_CREDENTIALS_PATH', 'federation_credentials.json')

# --- Federation Bus ---
BUS_URL = os.getenv('TRU_MONITOR_BUS_URL', 'ws://localhost:9086/bus')
SUBJECT_PREFIX = os.getenv('TRU_MONITOR_SUBJECT_PREFIX', 'truebit')
MESSAGE_VERSION = '1.0'
BUS_PUBLISH_TIMEOUT_SECONDS = 5.0
BUS_CONNECT_TIMEOUT_SECONDS = 30.0
BUS_RECONNECT_MAX_ATTEMPTS = 10
BUS_RECONNECT_BASE_DELAY = 2.0
BUS_RECONNECT_MAX_DELAY = 60.0

# --- Node Side ---
CONTAINER_PREFIX = 'runner-node'
HEARTBEAT_INTERVAL_SECONDS = 30
LOG_READ_TIMEOUT_SECONDS = 5.0
LOG_READER_BACKOFF_SECONDS = 2.0
LOG_READER_MAX_BACKOFF_SECONDS = 60.0
LOG_READER_MAX_RECONNECTS = 20
MAX_MESSAGES_PER_MINUTE = 60  # Outgoing federation rate limit
CIRCUIT_BREAKER_THRESHOLD = 5  # Consecutive publish failures before opening
CIRCUIT_BREAKER_RESET_SECONDS = 60

# --- Aggregator Side ---
STATS_PUBLISH_INTERVAL_SECONDS = int(os.getenv('TRU_MONITOR_PUBLISH_INTERVAL', '30'))
CLEANUP_INTERVAL_SECONDS = int(os.getenv('TRU_MONITOR_CLEANUP_INTERVAL', str(24 * 3600)))
NODE_LIVENESS_MINUTES = 5
DB_HISTORY_RETENTION_DAYS = int(os.getenv('TRU_MONITOR_RETENTION_DAYS', '30'))
DB_RECORDS_RETENTION_DAYS = 90  # Tasks and invoices, measured on last_seen_at
RATE_LIMIT_PER_NODE = int(os.getenv('TRU_MONITOR_RATE_LIMIT_PER_NODE', '10'))  # Messages per window per node
GLOBAL_RATE_LIMIT = int(os.getenv('TRU_MONITOR_GLOBAL_RATE_LIMIT', '1000'))
RATE_LIMIT_WINDOW_SECONDS = 1.0

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)
