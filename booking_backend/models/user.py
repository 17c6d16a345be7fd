"""User model definitions."""

from sqlalchemy import Column, Integer, String
from booking_backend.database import Base

ROLE_PATIENT = 'patient'
ROLE_DOCTOR = 'doctor'
ROLE_ADMIN = 'admin'


class User(Base):
    """Represents an application user. Managed by the identity layer; read-only here."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String)
    hashed_password = Column(String)
    role = Column(String)  # patient/doctor/admin
