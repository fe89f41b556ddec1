"""Reusable data and helpers for the guard test scenarios."""

from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from login_guard.core.database import Base
import login_guard.models  # noqa: F401

START = datetime(2026, 3, 14, 9, 30, 0)

CUSTOMER = {
    "identifier": "customer@sofacover.com",
    "ip_address": "203.0.113.10",
    "user_agent": "Mozilla/5.0 (X11; Linux x86_64)",
}

ATTACKER_IP = "198.51.100.66"


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def build_session_factory(url: str = "sqlite+pysqlite:///:memory:") -> sessionmaker:
    options = {"connect_args": {"check_same_thread": False}}
    if url.endswith(":memory:"):
        options["poolclass"] = StaticPool
    engine = create_engine(url, **options)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
