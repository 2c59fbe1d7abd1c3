import os
import tempfile
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_IMAGE_MODEL = os.getenv("REPLICATE_IMAGE_MODEL", "black-forest-labs/flux-schnell")
REPLICATE_VIDEO_MODEL = os.getenv("REPLICATE_VIDEO_MODEL", "minimax/video-01")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "600"))

# External merge service (render_worker/app.py)
RENDER_WORKER_URL = os.getenv("RENDER_WORKER_URL", "").strip()

DATA_DIR = os.getenv("DATA_DIR", os.path.join(tempfile.gettempdir(), "storyverse"))
MEDIA_DIR = os.path.join(DATA_DIR, "media")
JOBS_FILE = os.getenv("JOBS_FILE", os.path.join(DATA_DIR, "storyverse_jobs.json"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

KV_REST_API_URL = os.getenv("KV_REST_API_URL", "")
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "")

BACKOFF_RETRIES = int(os.getenv("BACKOFF_RETRIES", "3"))
BACKOFF_BASE_MS = int(os.getenv("BACKOFF_BASE_MS", "1000"))
SCENE_SPACING_MS = int(os.getenv("SCENE_SPACING_MS", "750"))
SCENE_FALLBACK_ENABLED = os.getenv("SCENE_FALLBACK_ENABLED", "1") not in ("0", "false", "no")
CAPTION_STRATEGY = os.getenv("CAPTION_STRATEGY", "ai").strip().lower()

# Comma-separated list of allowed origins for CORS (e.g., "https://app.example.com,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]


def missing_keys() -> list:
    missing = []
    if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
    if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
    if not RENDER_WORKER_URL: missing.append("RENDER_WORKER_URL")
    return missing


def has_all_keys() -> bool:
    missing = missing_keys()
    if missing:
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return not missing
