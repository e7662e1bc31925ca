from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import hashlib
import uuid
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi.security import OAuth2PasswordBearer
from core.config import settings
import logging

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bearer scheme for the OpenAPI 'Authorize' button
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(password)

def _refresh_secret() -> str:
    return settings.REFRESH_SECRET_KEY or settings.SECRET_KEY

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": ACCESS_TOKEN_TYPE})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def create_refresh_token(data: dict, family: str, expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """Create JWT refresh token bound to a token family.

    Returns the encoded token and its expiry (naive UTC, as stored in the DB).
    Every token gets a unique ``jti`` so two tokens never share a hash.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))
    to_encode.update({
        "exp": expire,
        "type": REFRESH_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "family": family,
    })
    encoded_jwt = jwt.encode(to_encode, _refresh_secret(), algorithm=settings.ALGORITHM)
    return encoded_jwt, expire.replace(tzinfo=None)

def new_token_family() -> str:
    return uuid.uuid4().hex

def hash_token(token: str) -> str:
    """One-way hash used to store and look up refresh tokens"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def verify_token(token: str) -> Optional[dict]:
    """Verify and decode an access token"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        return None
    if payload.get("type") != ACCESS_TOKEN_TYPE or not payload.get("user_id"):
        return None
    return payload

def verify_refresh_token(token: str) -> Optional[dict]:
    """Verify and decode a refresh token; None when malformed, expired or of the wrong type"""
    try:
        payload = jwt.decode(token, _refresh_secret(), algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.info(f"Refresh JWT decode failed: {e}")
        return None
    if payload.get("type") != REFRESH_TOKEN_TYPE:
        return None
    if not payload.get("user_id") or not payload.get("family"):
        return None
    return payload
