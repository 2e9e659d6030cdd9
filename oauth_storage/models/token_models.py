from sqlalchemy import Column, String, Boolean, Text, Index
import uuid

from .base import Base, UTCDateTime


class OAuthToken(Base):
    __tablename__ = "oauth_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token = Column(String(512), unique=True, nullable=False)
    type = Column(String(50), nullable=False)  # access, refresh, ...
    client_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=True)  # None for client_credentials
    scopes = Column(Text, nullable=False, default="[]")
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    access_token = Column(String(512), nullable=True)

    __table_args__ = (
        # Bulk revocation cascades
        Index("idx_oauth_tokens_client_id", "client_id"),
        Index("idx_oauth_tokens_user_id", "user_id"),
        # Expiry sweeps
        Index("idx_oauth_tokens_expires_at", "expires_at"),
    )
