from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from login_guard.core.config import BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS, DATABASE_URL


def build_engine_options(database_url: str, *, timeout_seconds: float) -> dict:
    """Timeouts so a stalled ledger never hangs the login path."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": timeout_seconds}}
    options: dict = {"pool_pre_ping": True, "pool_timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        timeout_ms = int(timeout_seconds * 1000)
        options["connect_args"] = {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
        }
    return options


engine = create_engine(
    DATABASE_URL,
    **build_engine_options(DATABASE_URL, timeout_seconds=BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
