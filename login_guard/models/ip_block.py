from sqlalchemy import Column, DateTime, Integer, String

from login_guard.core.database import Base


class IpBlock(Base):
    __tablename__ = "ip_blocks"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(64), nullable=False, unique=True, index=True)
    blocked_at = Column(DateTime, nullable=True)
    blocked_until = Column(DateTime, nullable=True)
    reason = Column(String(255), nullable=True)
