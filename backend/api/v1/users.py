from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user
from db.session import get_db_session
from schemas.user_schema import GatewaySettingsUpdate, User as UserSchema
from services.auth_service import get_me
from services.user_service import update_gateway_settings

router = APIRouter()

@router.get("/me", response_model=UserSchema)
async def read_profile(current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    return await get_me(current_user.id, db=db)

@router.get("/me/gateway")
async def read_gateway_settings(current_user: UserSchema = Depends(get_current_user)):
    # The gateway token is write-only
    return {"gateway_url": current_user.gateway_url, "configured": current_user.gateway_configured}

@router.put("/me/gateway", response_model=UserSchema)
async def write_gateway_settings(
    data: GatewaySettingsUpdate,
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await update_gateway_settings(current_user.id, data, db=db)
