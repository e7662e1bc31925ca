from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from db.session import Base
from utils.clock import utcnow
import uuid


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    # SHA-256 hex digest of the issued token; the raw token is never stored
    token_hash = Column(String(64), unique=True, nullable=False)
    family = Column(String(64), index=True, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_refresh_tokens_family_active", "family", "is_revoked"),
    )
