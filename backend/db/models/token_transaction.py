from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, Index
from db.session import Base
from utils.clock import utcnow
import uuid


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(16), nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    description = Column(String(255), nullable=True)
    reference_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_token_transactions_user_created", "user_id", "created_at"),
    )
