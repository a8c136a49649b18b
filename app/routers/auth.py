from fastapi import APIRouter, Depends
from datetime import timedelta

from app.models.user import Token, UserCreate, UserLogin, User, ROLES
from app.db.session import db
from app.core.errors import AuthenticationError, ConflictError, ValidationError
from app.services.auth import (
    hash_password,
    create_access_token,
    verify_password,
    get_current_user,
)
from app.core.config import settings

router = APIRouter()

def _token_for(user_id: str) -> dict:
    access_token_expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user_id}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}

@router.post("/auth/register", response_model=Token)
async def register(user_data: UserCreate):
    # Admin accounts are never self-registered
    if user_data.role not in ROLES or user_data.role == "admin":
        raise ValidationError("Invalid role")

    existing_user = await db.users.find_one({"email": user_data.email})
    if existing_user:
        raise ConflictError("User already exists")

    hashed_password = hash_password(user_data.password)
    user_dict = user_data.model_dump()
    user_dict.pop("password")

    user_obj = User(**user_dict)
    user_doc = user_obj.model_dump()
    user_doc["hashed_password"] = hashed_password
    await db.users.insert_one(user_doc)

    return _token_for(user_obj.id)


@router.post("/auth/login", response_model=Token)
async def login(user_data: UserLogin):
    user = await db.users.find_one({"email": user_data.email})
    if not user or not verify_password(user_data.password, user["hashed_password"]):
        raise AuthenticationError("Incorrect email or password")

    return _token_for(user["id"])


@router.get("/auth/me", response_model=User)
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user
