from sqlalchemy import Column, DateTime, Integer, String

from login_guard.core.database import Base


class AccountLockout(Base):
    __tablename__ = "account_lockouts"

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(255), nullable=False, unique=True, index=True)
    locked_at = Column(DateTime, nullable=True)
    locked_until = Column(DateTime, nullable=True)
    # Failures before this instant no longer count
    reset_at = Column(DateTime, nullable=True)
    lockout_level = Column(Integer, nullable=False, default=0)
    last_lockout_at = Column(DateTime, nullable=True)
    # Newest counted failure, used to decide when escalation lapses
    last_failure_at = Column(DateTime, nullable=True)
