import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _csv(name: str, default: str = "") -> list:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


ENVIRONMENT = os.getenv("ENVIRONMENT", "local")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "skillswap")

# Security
SECRET_KEY = os.getenv("JWT_SECRET", "change-this-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
ADMIN_EMAILS = [e.lower() for e in _csv("ADMIN_EMAILS")]

CORS_ORIGINS = _csv("CORS_ORIGINS", "*")

# Swap rules
VERIFICATION_THRESHOLD = int(os.getenv("VERIFICATION_THRESHOLD", 3))
FEEDBACK_UNIQUE_PER_REQUEST = _flag("FEEDBACK_UNIQUE_PER_REQUEST", "true")
USERS_PER_PAGE = int(os.getenv("USERS_PER_PAGE", 6))

ENABLE_SEED = _flag("ENABLE_SEED")
PORT = int(os.getenv("PORT", 8000))
