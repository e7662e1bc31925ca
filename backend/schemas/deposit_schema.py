from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import datetime

class DepositCreate(BaseModel):
    token_amount: int = Field(..., gt=0)

class PaymentInfo(BaseModel):
    bank_name: str
    account_number: str
    account_name: str
    transfer_content: str
    qr_code_url: str

class DepositOrder(BaseModel):
    id: str
    order_code: str
    token_amount: int
    amount_vnd: int
    status: str
    payment_info: PaymentInfo
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    expires_at: datetime
    created_at: datetime
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None

class PendingOrder(BaseModel):
    has_pending: bool
    order: Optional[DepositOrder] = None

class DepositList(BaseModel):
    orders: List[DepositOrder]
    total: int
    limit: int
    offset: int

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class AdminDepositList(BaseModel):
    deposits: List[DepositOrder]
    pagination: Pagination

class TokenTransaction(BaseModel):
    id: str
    type: str
    amount: int
    balance_after: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class TokenHistory(BaseModel):
    transactions: List[TokenTransaction]
    total: int
    limit: int
    offset: int

class PricingPackage(BaseModel):
    id: str
    name: str
    tokens: int
    bonus: int = 0
    popular: bool = False
    price_vnd: int

class PricingInfo(BaseModel):
    price_per_million: int
    currency: str
    minimum_tokens: int
    minimum_vnd: int
    packages: List[PricingPackage]

class SePayWebhook(BaseModel):
    """Bank transfer notification as posted by SePay"""
    id: Optional[int] = None
    gateway: Optional[str] = None
    transactionDate: Optional[str] = None
    accountNumber: Optional[str] = None
    code: Optional[str] = None
    content: str = ""
    transferType: str = "in"
    transferAmount: int = 0
    accumulated: Optional[int] = None
    subAccount: Optional[str] = None
    referenceCode: Optional[str] = None
    description: Optional[str] = None

    class Config:
        extra = "allow"

class AdminResolveRequest(BaseModel):
    action: Literal["complete", "cancel"]

class AdminTokenAdjustmentResult(BaseModel):
    user_id: str
    new_balance: int
