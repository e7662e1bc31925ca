from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime

class UserBase(BaseModel):
    email: EmailStr
    name: str = ""

class UserCreate(UserBase):
    password: str = Field(..., min_length=8, max_length=128)

class User(UserBase):
    id: str
    role: str
    is_active: bool
    token_balance: int
    gateway_url: Optional[str] = None
    gateway_configured: bool = False
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        extra = "ignore"

    @classmethod
    def from_model(cls, user) -> "User":
        out = cls.model_validate(user)
        out.gateway_configured = bool(user.gateway_url and user.gateway_token)
        return out

class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

class AuthResponse(TokenPair):
    user: User

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None

class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)

class GatewaySettingsUpdate(BaseModel):
    gateway_url: Optional[str] = Field(None, max_length=512)
    gateway_token: Optional[str] = Field(None, max_length=512)

class AdminTokenAdjustment(BaseModel):
    user_id: str
    amount: int
    reason: str = Field(..., min_length=1, max_length=200)
