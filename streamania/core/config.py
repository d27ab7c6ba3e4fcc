import os
from pathlib import Path


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            cleaned = value.strip().strip('"').strip("'")
            os.environ[key] = cleaned
    except OSError:
        return


def _load_env() -> None:
    current = Path(__file__).resolve()
    for candidate in (current.parents[2] / ".env", Path.cwd() / ".env"):
        _load_env_file(candidate)


_load_env()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def _split_env_list(value: str) -> set[str]:
    if not value:
        return set()
    items = []
    for raw in value.split(","):
        cleaned = raw.strip()
        if cleaned:
            items.append(cleaned.lower())
    return set(items)


def _default_database_url() -> str:
    current = Path(__file__).resolve()
    dev_db = (current.parents[2] / "streamania.db").resolve()
    return f"sqlite:///{dev_db.as_posix()}"


DATABASE_URL = os.getenv("DATABASE_URL", _default_database_url())
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-prod")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(24 * 60)))
PASSWORD_RESET_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60"))
PASSWORD_MIN_LENGTH = int(os.getenv("PASSWORD_MIN_LENGTH", "6"))
STARTING_WALLET = int(os.getenv("STARTING_WALLET", "1000"))
ADMIN_EMAILS = _split_env_list(os.getenv("ADMIN_EMAILS", ""))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

_DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173,http://localhost:8080,"
    "http://127.0.0.1:5173,http://127.0.0.1:8080"
)


def _normalize_cors(origins: str) -> list[str]:
    items: list[str] = []
    for raw in origins.split(","):
        value = raw.strip()
        if value and value not in items:
            items.append(value)
    return items


CORS_ORIGINS = _normalize_cors(os.getenv("CORS_ORIGINS", _DEFAULT_CORS_ORIGINS))

YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY", "")
YOUTUBE_API_URL = os.getenv("YOUTUBE_API_URL", "https://www.googleapis.com/youtube/v3/videos")
YOUTUBE_EMBED_HOST = os.getenv("YOUTUBE_EMBED_HOST", "www.youtube.com")
YOUTUBE_REQUEST_TIMEOUT_SECONDS = int(os.getenv("YOUTUBE_REQUEST_TIMEOUT_SECONDS", "10"))
STREAM_STATUS_POLL_ENABLED = _env_flag("STREAM_STATUS_POLL_ENABLED", "true")
STREAM_STATUS_POLL_SECONDS = int(os.getenv("STREAM_STATUS_POLL_SECONDS", "30"))

CHAT_MESSAGE_MAX_LENGTH = int(os.getenv("CHAT_MESSAGE_MAX_LENGTH", "500"))
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", "100"))
CHAT_DEFAULT_SLOW_MODE_DELAY = int(os.getenv("CHAT_DEFAULT_SLOW_MODE_DELAY", "10"))

QUIZ_DEFAULT_TIME_LIMIT = int(os.getenv("QUIZ_DEFAULT_TIME_LIMIT", "30"))
QUIZ_PAYOUT_MULTIPLIER = int(os.getenv("QUIZ_PAYOUT_MULTIPLIER", "2"))

RATE_LIMIT_ENABLED = _env_flag("RATE_LIMIT_ENABLED", "true")
RATE_LIMIT_DEFAULT_PER_MINUTE = int(os.getenv("RATE_LIMIT_DEFAULT_PER_MINUTE", "120"))
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.getenv("RATE_LIMIT_LOGIN_PER_MINUTE", "8"))
RATE_LIMIT_CHAT_PER_MINUTE = int(os.getenv("RATE_LIMIT_CHAT_PER_MINUTE", "60"))
