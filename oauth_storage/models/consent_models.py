from sqlalchemy import Column, String, Text, UniqueConstraint
import uuid

from .base import Base, UTCDateTime


class OAuthConsent(Base):
    __tablename__ = "oauth_consents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False)
    client_id = Column(String(255), nullable=False)
    scopes = Column(Text, nullable=False, default="[]")
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_oauth_consents_user_client"),
    )
