from sqlalchemy import Column, String, Text, DateTime, Boolean
from models.base import Base, PrimaryKeyType, utc_now


class OAuthToken(Base):
    """
    Persisted OAuth token for the remote practice-management API.

    Only one row per provider is active; refreshing deactivates the
    previous rows and inserts a new active one.
    """
    __tablename__ = "oauth_tokens"

    id = Column(PrimaryKeyType, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False, index=True)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String(20), nullable=False, default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
