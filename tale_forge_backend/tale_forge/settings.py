import os
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_TEXT_MODEL = os.getenv("OPENAI_TEXT_MODEL", "gpt-4o-mini")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_IMAGE_MODEL = os.getenv("REPLICATE_IMAGE_MODEL", "black-forest-labs/flux-schnell")
REPLICATE_VIDEO_MODEL = os.getenv("REPLICATE_VIDEO_MODEL", "wan-video/wan-2.2-i2v-fast")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))

# Object storage (Supabase Storage REST). Empty URL means local directory storage.
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "")
STORAGE_BUCKETS = {
    "text": os.getenv("STORAGE_BUCKET_TEXT", "story-text"),
    "image": os.getenv("STORAGE_BUCKET_IMAGE", "story-images"),
    "audio": os.getenv("STORAGE_BUCKET_AUDIO", "story-audio"),
    "video": os.getenv("STORAGE_BUCKET_VIDEO", "story-videos"),
}

# Per-attempt provider deadlines, in seconds
TIMEOUTS_S = {
    "text": float(os.getenv("TEXT_TIMEOUT_S", "30")),
    "image": float(os.getenv("IMAGE_TIMEOUT_S", "60")),
    "audio": float(os.getenv("AUDIO_TIMEOUT_S", "90")),
    "video": float(os.getenv("VIDEO_TIMEOUT_S", "300")),
}

# Total provider calls allowed per artifact kind within one request
MAX_ATTEMPTS = {
    "text": int(os.getenv("TEXT_MAX_ATTEMPTS", "2")),
    "image": int(os.getenv("IMAGE_MAX_ATTEMPTS", "2")),
    "audio": int(os.getenv("AUDIO_MAX_ATTEMPTS", "1")),
    "video": int(os.getenv("VIDEO_MAX_ATTEMPTS", "1")),
}

BACKOFF_BASE_S = float(os.getenv("BACKOFF_BASE_S", "1.0"))
BACKOFF_CAP_S = float(os.getenv("BACKOFF_CAP_S", "20.0"))
STORAGE_WRITE_ATTEMPTS = int(os.getenv("STORAGE_WRITE_ATTEMPTS", "3"))
MAX_CONCURRENT_PROVIDER_CALLS = int(os.getenv("MAX_CONCURRENT_PROVIDER_CALLS", "3"))

# Consecutive provider failures that open a kind's circuit, and how long it stays open
CIRCUIT_BREAKER_MAX_FAILURES = int(os.getenv("CIRCUIT_BREAKER_MAX_FAILURES", "3"))
CIRCUIT_BREAKER_RESET_S = float(os.getenv("CIRCUIT_BREAKER_RESET_S", "60"))

# Must stay longer than the slowest kind's full attempt loop
RESERVATION_TIMEOUT_S = float(os.getenv("RESERVATION_TIMEOUT_S", "900"))
SWEEP_INTERVAL_S = float(os.getenv("SWEEP_INTERVAL_S", "60"))

VIDEO_CREDIT_COST = int(os.getenv("VIDEO_CREDIT_COST", "30"))

# Comma-separated list of allowed origins for CORS (e.g., "https://app.vercel.app,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    keys_present = all([OPENAI_API_KEY, REPLICATE_API_TOKEN, ELEVENLABS_API_KEY, ELEVENLABS_VOICE_ID])
    if not keys_present:
        missing = []
        if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
        if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
        if not ELEVENLABS_API_KEY: missing.append("ELEVENLABS_API_KEY")
        if not ELEVENLABS_VOICE_ID: missing.append("ELEVENLABS_VOICE_ID")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present
