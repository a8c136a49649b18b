import bcrypt
from jose import JWTError, jwt
from datetime import datetime, timedelta
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.models.user import User
from app.db.session import db
from app.core.config import settings
from app.core.errors import AuthenticationError, AuthorizationError

security = HTTPBearer(auto_error=False)

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.ALGORITHM)
    return encoded_jwt

async def _user_from_token(token: str) -> Optional[dict]:
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return await db.users.find_one({"id": user_id})

async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if credentials is None:
        raise AuthenticationError("Authentication required")
    try:
        user = await _user_from_token(credentials.credentials)
    except JWTError:
        raise AuthenticationError("Invalid authentication credentials")

    if user is None:
        raise AuthenticationError("User not found")

    if user.get("status") == "suspended":
        raise AuthorizationError("Account is suspended")

    return User(**user)

async def get_current_user_optional(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if credentials is None:
        return None
    try:
        user = await _user_from_token(credentials.credentials)
    except JWTError:
        return None

    if user is None or user.get("status") == "suspended":
        return None

    return User(**user)

async def get_admin_user(current_user: User = Depends(get_current_user)):
    if current_user.role != "admin":
        raise AuthorizationError("Admin access required")
    return current_user

def require_roles(*roles: str):
    """Dependency factory restricting an endpoint to the given roles (admins always pass)"""
    async def checker(current_user: User = Depends(get_current_user)):
        if current_user.role != "admin" and current_user.role not in roles:
            raise AuthorizationError(f"This action requires one of the roles: {', '.join(roles)}")
        return current_user
    return checker
