from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
import hmac
import logging

from api.dependencies import get_current_user
from core.config import settings
from db.session import get_db_session
from schemas.deposit_schema import (
    DepositCreate,
    DepositList,
    DepositOrder,
    PendingOrder,
    PricingInfo,
    SePayWebhook,
    TokenHistory,
)
from schemas.user_schema import User as UserSchema
from services import deposit_service

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()

@router.get("/pricing", response_model=PricingInfo)
async def get_pricing():
    return deposit_service.get_pricing_info()

@router.post("", response_model=DepositOrder, status_code=201)
async def create_deposit(data: DepositCreate, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.create_deposit(current_user.id, data.token_amount, db=db)

@router.get("/pending", response_model=PendingOrder)
async def get_pending_order(current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.get_pending_order(current_user.id, db=db)

@router.get("/history", response_model=DepositList)
async def get_deposit_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await deposit_service.get_deposit_history(current_user.id, limit, offset, db=db)

@router.get("/tokens/history", response_model=TokenHistory)
async def get_token_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await deposit_service.get_token_history(current_user.id, limit, offset, db=db)

@router.get("/{order_id}", response_model=DepositOrder)
async def get_deposit(order_id: str, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.get_deposit(current_user.id, order_id, db=db)

@router.post("/{order_id}/cancel")
async def cancel_deposit(order_id: str, current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await deposit_service.cancel_pending_order(current_user.id, order_id, db=db)


def _webhook_authorized(request: Request) -> bool:
    expected = settings.SEPAY_WEBHOOK_API_KEY
    if not expected:
        return True
    header = request.headers.get("authorization") or ""
    scheme, _, key = header.partition(" ")
    return scheme.lower() == "apikey" and hmac.compare_digest(key.strip(), expected)

@webhook_router.post("/payment")
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db_session)):
    """Bank notification endpoint. Always acknowledged so the provider does not retry forever."""
    if not _webhook_authorized(request):
        logger.warning(f"Payment webhook with invalid API key from {request.client.host if request.client else '-'}")
        return {"success": True}
    try:
        payload = SePayWebhook.model_validate(await request.json())
    except (ValueError, PydanticValidationError) as e:
        logger.warning(f"Malformed payment webhook: {e}")
        return {"success": True}
    try:
        await deposit_service.handle_sepay_webhook(payload, db=db)
    except Exception as e:
        logger.exception(f"Payment webhook processing failed for {payload.referenceCode}: {e}")
    return {"success": True}
