import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./expense_tracker.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
FRONTEND_URL = os.getenv("FRONTEND_URL", FRONTEND_ORIGIN)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CURRENCY = os.getenv("CURRENCY", "VND").strip().upper() or "VND"

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL_MINUTES = _env_int("ACCESS_TOKEN_TTL_MINUTES", 15)
REFRESH_TOKEN_TTL_DAYS = _env_int("REFRESH_TOKEN_TTL_DAYS", 7)
COOKIE_SECURE = _env_flag("COOKIE_SECURE", False)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.getenv(
    "GOOGLE_REDIRECT_URI", "http://localhost:8000/email-sync/gmail/callback"
)
GMAIL_PUBSUB_TOPIC = os.getenv("GMAIL_PUBSUB_TOPIC")

SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", True)
RECURRING_SWEEP_HOUR = _env_int("RECURRING_SWEEP_HOUR", 1)
GMAIL_WATCH_RENEWAL_DAYS = _env_int("GMAIL_WATCH_RENEWAL_DAYS", 6)
NOTIFICATION_HEARTBEAT_SECONDS = _env_int("NOTIFICATION_HEARTBEAT_SECONDS", 30)
