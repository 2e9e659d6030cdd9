from sqlalchemy import Column, String, Boolean, Text, Index
import uuid

from .base import Base, UTCDateTime


class OAuthAuthCode(Base):
    __tablename__ = "oauth_auth_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(255), unique=True, nullable=False)
    client_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scopes = Column(Text, nullable=False, default="[]")
    code_challenge = Column(String(255), nullable=True)
    code_challenge_method = Column(String(50), nullable=True)  # S256 or plain
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_oauth_auth_codes_expires_at", "expires_at"),
    )
