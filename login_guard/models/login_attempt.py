from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from login_guard.core.database import Base


class LoginAttemptRecord(Base):
    __tablename__ = "login_attempts"
    __table_args__ = (
        Index("ix_login_attempts_identifier_created", "identifier", "created_at"),
        Index("ix_login_attempts_ip_created", "ip_address", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(255), nullable=False)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(String(512), nullable=False, default="")
    success = Column(Boolean, nullable=False, default=False)
    # Rejected by an active lockout or IP block; kept for audit, never counted
    blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
