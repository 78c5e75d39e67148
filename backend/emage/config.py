"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Native optimizer binaries (name -> executable). Override any of them with <NAME>_BIN.
TOOL_PATHS = {
    "jpegoptim": os.getenv("JPEGOPTIM_BIN", "jpegoptim"),
    "jpegtran": os.getenv("JPEGTRAN_BIN", "jpegtran"),
    "cjpeg": os.getenv("CJPEG_BIN", "cjpeg"),
    "advpng": os.getenv("ADVPNG_BIN", "advpng"),
    "optipng": os.getenv("OPTIPNG_BIN", "optipng"),
    "pngcrush": os.getenv("PNGCRUSH_BIN", "pngcrush"),
    "pngout": os.getenv("PNGOUT_BIN", "pngout"),
    "zopflipng": os.getenv("ZOPFLIPNG_BIN", "zopflipng"),
    "svgo": os.getenv("SVGO_BIN", "svgo"),
    "giflossy": os.getenv("GIFLOSSY_BIN", "giflossy"),
    "gifsicle": os.getenv("GIFSICLE_BIN", "gifsicle"),
}

# Pipeline options (env overrides)
STEP_TIMEOUT = int(os.getenv("STEP_TIMEOUT", "300"))  # seconds per algorithm
KEEP_SOURCE_DEFAULT = _env_bool("KEEP_SOURCE_DEFAULT", False)

# Concurrency: runs for different images share this pool, steps of one run never overlap
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(8, (os.cpu_count() or 2)))))

# Database – SQLite by default, any SQLAlchemy URL via DATABASE_URL.
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    db_path = BASE_DIR / "data" / "emage.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{db_path}"
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "50"))

# Server (for uvicorn)
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("emage")
