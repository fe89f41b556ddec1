import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from login_guard.core.config import CORS_ORIGINS, DATABASE_URL
from login_guard.core.database import Base, SessionLocal, engine
from login_guard.core.error_handlers import register_exception_handlers
from login_guard.core.logging_setup import configure_logging
from login_guard.core.startup_checks import (
    ensure_ledger_tables_exist,
    ensure_migrations_applied,
    validate_database_environment,
)
from login_guard.deps import build_guard
from login_guard.middleware.observability import ObservabilityMiddleware
import login_guard.models  # registers the ledger tables before create_all

from login_guard.routers.admin_security import router as admin_security_router
from login_guard.routers.brute_force import router as brute_force_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


app = FastAPI(
    title="Login Guard API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)
register_exception_handlers(app)


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        ensure_ledger_tables_exist(engine)
        # Invalid thresholds or durations abort startup here
        app.state.guard = build_guard(SessionLocal)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


# Routers
app.include_router(brute_force_router)
app.include_router(admin_security_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
