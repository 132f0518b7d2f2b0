# Shared configuration for the portal, the importer and the offline client

import os
import uuid
from pathlib import Path
from datetime import datetime, timezone

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
# Try .env next to the package, one level up, then cwd
_package_dir = Path(__file__).resolve().parent
for _env_path in [_package_dir / ".env", _package_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Connection strings and provider settings
# ---------------------------------------------------------------------------
MONGODB_URL    = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB     = os.getenv("MONGODB_DB", "civicsense")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL   = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
AI_MAX_RETRIES = int(os.getenv("AI_MAX_RETRIES", "3"))

JWT_SECRET       = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM    = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))

MEDIA_DIR       = Path(os.getenv("MEDIA_DIR", str(Path.cwd() / "media")))
MEDIA_URL       = os.getenv("MEDIA_URL", "/media")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Client-side durable storage for the offline queue and the voter session id
CLIENT_STATE_DIR = Path(os.getenv("CIVICSENSE_CLIENT_DIR", str(Path.home() / ".civicsense")))
PORTAL_URL       = os.getenv("PORTAL_URL", "http://localhost:8000")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)
