import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Chat history is only kept when explicitly enabled
CHAT_HISTORY_ENABLED = os.getenv("CHAT_HISTORY_ENABLED", "false").lower() == "true"
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", 200))
CHAT_HISTORY_TTL = int(os.getenv("CHAT_HISTORY_TTL", 86400))

STUN_URL = os.getenv("STUN_URL", "stun:stun.l.google.com:19302")

# Seconds a room left to a single member may stay silent before it is dismantled. 0 disables.
ROOM_IDLE_TIMEOUT = int(os.getenv("ROOM_IDLE_TIMEOUT", 300))
ROOM_SWEEP_INTERVAL = int(os.getenv("ROOM_SWEEP_INTERVAL", 15))
ROOM_CODE_LENGTH = int(os.getenv("ROOM_CODE_LENGTH", 6))

TOPIC_SERVICE_URL = os.getenv("TOPIC_SERVICE_URL", None)
SUMMARY_SERVICE_URL = os.getenv("SUMMARY_SERVICE_URL", None)
TOPIC_SERVICE_TIMEOUT = float(os.getenv("TOPIC_SERVICE_TIMEOUT", 10))

REACTION_DISPLAY_SECONDS = float(os.getenv("REACTION_DISPLAY_SECONDS", 3))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
