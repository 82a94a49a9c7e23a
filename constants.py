import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Signaling server
SIGNALING_HOST = os.getenv("SIGNALING_HOST", "0.0.0.0")
DEFAULT_SIGNALING_PORT = int(os.getenv("PORT", 3001))
PORT_SCAN_LIMIT = int(os.getenv("PORT_SCAN_LIMIT", 100))
# The server writes its chosen port here; discovery reads it back
PORT_FILE = os.getenv("PORT_FILE", None)
SIGNALING_PATH = "/ws"
HEALTH_PATH = "/health"

# Discovery
TUNNEL_URL = os.getenv("TUNNEL_URL", None)
TUNNEL_URL_FILE = os.getenv("TUNNEL_URL_FILE", None)
DEFAULT_SERVER_URL = os.getenv("DEFAULT_SERVER_URL", f"http://localhost:{DEFAULT_SIGNALING_PORT}")
CONNECT_TIMEOUT_SECONDS = float(os.getenv("CONNECT_TIMEOUT_SECONDS", 10))
HEALTH_TIMEOUT_SECONDS = float(os.getenv("HEALTH_TIMEOUT_SECONDS", 5))
MAX_CONNECT_ATTEMPTS = int(os.getenv("MAX_CONNECT_ATTEMPTS", 3))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 2))

# Room registry
REGISTRY_URL = os.getenv("REGISTRY_URL", "http://localhost:3001")
REGISTRY_SCHEME = os.getenv("REGISTRY_SCHEME", "https")
REGISTRY_TIMEOUT_SECONDS = float(os.getenv("REGISTRY_TIMEOUT_SECONDS", 5))
PUBLIC_IP_URL = os.getenv("PUBLIC_IP_URL", "https://api.ipify.org")
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 600))
TUNNEL_HOST_MARKERS = (".loca.lt", "ngrok", "tunnelmole")

# Room codes: 6 chars from [a-z0-9]
ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

# WebRTC
STUN_URL = os.getenv("STUN_URL", "stun:stun.l.google.com:19302")
TURN_URL = os.getenv("TURN_URL", "turn:openrelay.metered.ca:80")
TURN_USERNAME = os.getenv("TURN_USERNAME", "openrelayproject")
TURN_CREDENTIAL = os.getenv("TURN_CREDENTIAL", "openrelayproject")

# Capture
RESOLUTIONS = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
}
FPS_OPTIONS = (24, 30, 60)
DEFAULT_RESOLUTION = "1080p"
DEFAULT_FPS = 30
