"""
Mesh Traceroute Monitor Configuration
"""

# Database file path
DATABASE_PATH = "traceroute_monitor.db"

# Seconds SQLite waits on a locked database before giving up
DATABASE_TIMEOUT = 10

# Node number of the locally attached radio (None until the gateway reports it)
LOCAL_NODE_NUM = None

# ============ Auto-Traceroute Configuration ============

# Minutes between scheduling ticks (0 disables auto-traceroute)
TRACEROUTE_INTERVAL_MINUTES = 3

# Retry cooldowns (hours)
COLD_RETRY_HOURS = 3     # No result yet (never probed, or last probe failed)
STALE_RETRY_HOURS = 24   # Result exists, refresh it once a day

# Radio reports SNR in quarter-dB steps
SNR_SCALE = 4.0

# ============ Route Segment Configuration ============

SEGMENT_RETENTION_DAYS = 30         # Non-record segments older than this are deleted
ACTIVE_SEGMENT_DAYS = 7             # Window for "longest active segment"
SEGMENT_CLEANUP_INTERVAL_HOURS = 1

# Distance unit used when rendering routes ('km' or 'mi')
DISTANCE_UNIT = 'km'

# ============ Gateway (radio transport) ============

GATEWAY_URL = "http://localhost:8080"

# Request timeout for gateway calls (seconds)
REQUEST_TIMEOUT = 10

# Default number of rows returned by history queries
HISTORY_LIMIT = 50

# Web server settings
HOST = "0.0.0.0"
PORT = 5000
DEBUG = False  # Disabled - eventlet doesn't work well with werkzeug's reloader
