import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Redis connect and read timeout, also the bound on relay store calls.
REDIS_SOCKET_TIMEOUT_SECONDS = float(os.getenv("REDIS_SOCKET_TIMEOUT_SECONDS", 2.0))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Bound on a single outbound websocket write; a slower peer is torn down.
WS_WRITE_TIMEOUT_SECONDS = float(os.getenv("WS_WRITE_TIMEOUT_SECONDS", 5.0))

# Sessions of rooms that stayed empty this long are dropped from memory (0 = never).
ROOM_SESSION_IDLE_SECONDS = float(os.getenv("ROOM_SESSION_IDLE_SECONDS", 900))
ROOM_SWEEP_INTERVAL_SECONDS = float(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 60))

SNAPSHOT_TTL_SECONDS = int(os.getenv("SNAPSHOT_TTL_SECONDS", 86400))

DEFAULT_ROOM_ID = os.getenv("DEFAULT_ROOM_ID", "default")
