from sqlalchemy import Column, String
import uuid

from .base import Base, UTCDateTime


class User(Base):
    """Resource owner. Owned by the host application; referenced here by ``user_id`` only."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    password = Column(String(255), nullable=False)  # hashed by the host application
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
