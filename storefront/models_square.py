"""
Square Integration Models
Database model for storing the Square OAuth token of the storefront
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from .database import Base
from .models import utcnow


class OAuthToken(Base):
    """Store OAuth tokens per provider (one row per provider)"""

    __tablename__ = "oauth_tokens"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), unique=True, nullable=False, index=True)
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    expires_at = Column(DateTime, nullable=False)
    merchant_id = Column(String(255), nullable=True)
    location_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)  # token_type, scope, environment
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
