from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, client_info
from db.session import get_db_session
from schemas.user_schema import (
    AuthResponse,
    ChangePasswordRequest,
    LogoutRequest,
    RefreshRequest,
    TokenPair,
    User as UserSchema,
    UserCreate,
    UserLogin,
)
from services import auth_service
from utils.responses import no_store_json

router = APIRouter()

@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(data: UserCreate, request: Request, db: AsyncSession = Depends(get_db_session)):
    return no_store_json(await auth_service.register(data, db=db, **client_info(request)), status_code=201)

@router.post("/login", response_model=AuthResponse)
async def login(data: UserLogin, request: Request, db: AsyncSession = Depends(get_db_session)):
    return no_store_json(await auth_service.login(data.email, data.password, db=db, **client_info(request)))

@router.post("/refresh", response_model=TokenPair)
async def refresh_token(data: RefreshRequest, request: Request, db: AsyncSession = Depends(get_db_session)):
    return no_store_json(await auth_service.refresh(data.refresh_token, db=db, **client_info(request)))

@router.post("/logout")
async def logout(data: LogoutRequest, db: AsyncSession = Depends(get_db_session)):
    await auth_service.logout(data.refresh_token, db=db)
    return {"success": True}

@router.post("/logout-all")
async def logout_all(current_user: UserSchema = Depends(get_current_user), db: AsyncSession = Depends(get_db_session)):
    revoked = await auth_service.revoke_all_for_user(current_user.id, db=db)
    return {"success": True, "revoked": revoked}

@router.get("/me", response_model=UserSchema)
async def read_me(current_user: UserSchema = Depends(get_current_user)):
    return no_store_json(current_user)

@router.post("/change-password", response_model=TokenPair)
async def change_password_endpoint(
    data: ChangePasswordRequest,
    request: Request,
    current_user: UserSchema = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return no_store_json(await auth_service.change_password(current_user.id, data, db=db, **client_info(request)))
