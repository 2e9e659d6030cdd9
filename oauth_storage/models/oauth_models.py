from sqlalchemy import Column, String, Boolean, Text, Index
import uuid

from .base import Base, UTCDateTime


class OAuthClient(Base):
    __tablename__ = "oauth_clients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String(255), unique=True, nullable=False)
    client_secret_hash = Column(String(255), nullable=True)  # None for public clients
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # JSON-encoded lists, see oauth_storage.common.encoding
    redirect_uris = Column(Text, nullable=False, default="[]")
    grant_types = Column(Text, nullable=False, default="[]")
    scopes = Column(Text, nullable=False, default="[]")
    is_confidential = Column(Boolean, nullable=False, default=True)
    owner_id = Column(String(255), nullable=False)
    logo_url = Column(Text, nullable=True)
    website_url = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_oauth_clients_owner_id", "owner_id"),
    )
