import os
from pathlib import Path

# Base path for the service package
BASE_PATH = Path(__file__).resolve().parent

SERVICE_VERSION = os.environ.get("TRYON_SERVICE_VERSION", "0.1.0")

# Remote compositor (hosted image-edits passthrough)
REMOTE_URL = os.environ.get(
    "TRYON_REMOTE_URL", "https://api.picaos.com/v1/passthrough/v1/images/edits"
)
REMOTE_SECRET = os.environ.get("TRYON_REMOTE_SECRET", "")
REMOTE_CONNECTION_KEY = os.environ.get("TRYON_REMOTE_CONNECTION_KEY", "")
REMOTE_ACTION_ID = os.environ.get(
    "TRYON_REMOTE_ACTION_ID", "conn_mod_def::GDzgKobnql8::UtRTNhIvQFqcEbowGSxfYQ"
)
REMOTE_TIMEOUT_SECONDS = float(os.environ.get("TRYON_REMOTE_TIMEOUT", "90"))
REMOTE_MAX_ATTEMPTS = int(os.environ.get("TRYON_REMOTE_ATTEMPTS", "2"))
REMOTE_RETRY_DELAY_SECONDS = float(os.environ.get("TRYON_REMOTE_RETRY_DELAY", "10"))

# Circuit breaker around the remote compositor
BREAKER_FAILURE_THRESHOLD = int(os.environ.get("TRYON_BREAKER_THRESHOLD", "3"))
BREAKER_COOLDOWN_SECONDS = float(os.environ.get("TRYON_BREAKER_COOLDOWN", "1800"))

# Preprocessing
TARGET_SIZE = int(os.environ.get("TRYON_TARGET_SIZE", "1024"))
OUTPUT_QUALITY = float(os.environ.get("TRYON_OUTPUT_QUALITY", "0.95"))

# Image source limits (encoded bytes)
MAX_IMAGE_BYTES = int(os.environ.get("TRYON_MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
MIN_REMOTE_IMAGE_BYTES = int(os.environ.get("TRYON_MIN_REMOTE_IMAGE_BYTES", str(50 * 1024)))
MIN_INLINE_IMAGE_BYTES = int(os.environ.get("TRYON_MIN_INLINE_IMAGE_BYTES", str(10 * 1024)))
FETCH_TIMEOUT_SECONDS = float(os.environ.get("TRYON_FETCH_TIMEOUT", "30"))

# Fallback renderer canvas (portrait 3:4)
FALLBACK_CANVAS_SIZE = (1024, 1365)
PLACEHOLDER_CANVAS_SIZE = (1024, 1365)

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8081",
    "http://127.0.0.1",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8081",
]

_cors_env = os.environ.get("TRYON_CORS_ORIGINS")
if _cors_env:
    CORS_ALLOW_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip()]
else:
    CORS_ALLOW_ORIGINS = _DEFAULT_CORS_ORIGINS

CORS_ALLOW_ORIGIN_REGEX = os.environ.get(
    "TRYON_CORS_ORIGIN_REGEX", r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
)

HOST = os.environ.get("TRYON_HOST", "0.0.0.0")
PORT = int(os.environ.get("TRYON_PORT", "8000"))
