import os
from dotenv import load_dotenv

# Loads the .env at the project root
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./login_guard.db")

def current_env() -> str:
    """ENVIRONMENT wins over ENV; read at call time so checks see the live value."""
    return os.getenv("ENVIRONMENT", os.getenv("ENV", "dev")).strip().lower()


ENV = current_env()
IS_DEV = ENV in {"dev", "development", "local"}

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "").strip()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name}: {raw}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name}: {raw}") from exc


def _env_int_list(name: str, default: str) -> tuple[int, ...]:
    raw = os.getenv(name, default)
    try:
        return tuple(int(step.strip()) for step in raw.split(",") if step.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name}: {raw}") from exc


# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

# Brute-force protection
BRUTE_FORCE_MAX_ATTEMPTS = _env_int("BRUTE_FORCE_MAX_ATTEMPTS", 5)
BRUTE_FORCE_WINDOW_MINUTES = _env_int("BRUTE_FORCE_WINDOW_MINUTES", 30)
BRUTE_FORCE_LOCKOUT_MINUTES = _env_int("BRUTE_FORCE_LOCKOUT_MINUTES", 15)
BRUTE_FORCE_PROGRESSIVE = _env_flag("BRUTE_FORCE_PROGRESSIVE", "1")
BRUTE_FORCE_ESCALATION = _env_int_list("BRUTE_FORCE_ESCALATION", "1,4,96")
BRUTE_FORCE_MAX_LOCKOUT_HOURS = _env_int("BRUTE_FORCE_MAX_LOCKOUT_HOURS", 24)
BRUTE_FORCE_CLEAN_PERIOD_DAYS = _env_int("BRUTE_FORCE_CLEAN_PERIOD_DAYS", 7)
BRUTE_FORCE_CAPTCHA_THRESHOLD = _env_int("BRUTE_FORCE_CAPTCHA_THRESHOLD", 3)
BRUTE_FORCE_IP_THRESHOLD = _env_int("BRUTE_FORCE_IP_THRESHOLD", 20)
BRUTE_FORCE_IP_BLOCK_MINUTES = _env_int("BRUTE_FORCE_IP_BLOCK_MINUTES", 60)
BRUTE_FORCE_RETENTION_DAYS = _env_int("BRUTE_FORCE_RETENTION_DAYS", 30)

# "open" keeps logins available when the ledger is down, "closed" rejects them
BRUTE_FORCE_FAIL_MODE = os.getenv("BRUTE_FORCE_FAIL_MODE", "open").strip().lower()
BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS = _env_float("BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS", 2.0)
BRUTE_FORCE_RETRY_BACKOFF_SECONDS = _env_float("BRUTE_FORCE_RETRY_BACKOFF_SECONDS", 0.05)
