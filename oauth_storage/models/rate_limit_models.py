from sqlalchemy import Column, String, Integer
import uuid

from .base import Base, UTCDateTime


class OAuthRateLimit(Base):
    __tablename__ = "oauth_rate_limits"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    key = Column(String(512), unique=True, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    reset_at = Column(UTCDateTime, nullable=False)
