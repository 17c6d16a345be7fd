"""Doctor schedule model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer
from booking_backend.database import Base


class ScheduleEntry(Base):
    """One weekly recurring availability window for a doctor.

    ``weekday`` uses 0 = Sunday ... 6 = Saturday. Times are minutes since midnight.
    """
    __tablename__ = "doctor_schedules"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    weekday = Column(Integer, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    max_appointments = Column(Integer, nullable=False, default=1)
