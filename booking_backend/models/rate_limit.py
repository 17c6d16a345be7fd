"""Rate limit window model definitions."""

from sqlalchemy import BigInteger, Column, Integer, String
from booking_backend.database import Base


class RateLimitWindow(Base):
    """Fixed-window counter for one caller key, shared across app instances."""
    __tablename__ = "rate_limit_windows"

    key = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    reset_at_ms = Column(BigInteger, nullable=False)
