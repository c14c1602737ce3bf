"""
Centralized Constants for the Lead Engine backend.
All hardcoded values should be defined here for easy maintenance.
"""

# ============================================
# PROVIDER API TIMEOUTS (in seconds)
# ============================================
TIMEOUT_PROVIDER_CONNECT = 5.0         # TCP connect to a WhatsApp provider
PROVIDER_CONNECT_RETRY_ATTEMPTS = 2    # Immediate retries on connection errors only

# ============================================
# SCHEDULER BOUNDS
# ============================================
SCHEDULER_MIN_TICK_SECONDS = 5.0
SCHEDULER_MAX_TICK_SECONDS = 15.0
SCHEDULER_SHUTDOWN_TIMEOUT = 30.0      # Wait for in-flight dispatches on shutdown

# ============================================
# RATE LIMIT WINDOWS (name -> seconds)
# ============================================
RATE_LIMIT_WINDOWS = (
    ("second", 1),
    ("minute", 60),
    ("hour", 3600),
)
RATE_LIMIT_KEY_PREFIX = "ratelimit"

# ============================================
# MESSAGE LOG
# ============================================
MAX_ERROR_MESSAGE_LENGTH = 1000        # Truncate provider error bodies

# ============================================
# DATABASE POOL SETTINGS
# ============================================
DB_POOL_SIZE = 5
DB_MAX_OVERFLOW = 10
DB_POOL_RECYCLE = 300
