from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, Index
from db.session import Base
from utils.clock import utcnow
import uuid


class DepositOrder(Base):
    __tablename__ = "deposit_orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    # Customer puts this code in the bank transfer content
    order_code = Column(String(32), unique=True, nullable=False)
    token_amount = Column(BigInteger, nullable=False)
    amount = Column(BigInteger, nullable=False)
    # pending | completed | cancelled | expired
    status = Column(String(16), default="pending", nullable=False)
    payment_method = Column(String(32), nullable=True)
    # Bank reference of the applied transfer; unique so a transfer is applied once
    payment_reference = Column(String(128), unique=True, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_deposit_orders_user_created", "user_id", "created_at"),
        Index("ix_deposit_orders_status_expires", "status", "expires_at"),
    )
