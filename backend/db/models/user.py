from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime
from db.session import Base
from utils.clock import utcnow
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False, default="")
    password_hash = Column(String(255), nullable=False)
    role = Column(String(50), default="user", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    token_balance = Column(BigInteger, default=0, nullable=False)
    # User-operated gateway the cron runner calls
    gateway_url = Column(String(512), nullable=True)
    gateway_token = Column(String(512), nullable=True)
    last_active_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
