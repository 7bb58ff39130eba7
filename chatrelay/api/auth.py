"""Authentication endpoints (web chat session)"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.api.deps import get_current_user
from chatrelay.config import settings
from chatrelay.db import get_db
from chatrelay.db.models import User
from chatrelay.schemas import Token, UserCreate, UserLogin, UserResponse
from chatrelay.services.auth_service import (
    authenticate_user,
    count_users,
    create_access_token,
    create_user,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.access_token_expire_minutes * 60,
        httponly=True,
        secure=not settings.debug,
        samesite="lax",
        path="/",
    )


@router.post("/setup", response_model=Token, status_code=status.HTTP_201_CREATED)
async def setup(
    user_data: UserCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Create the first (admin) user. Only allowed while no users exist."""
    if await count_users(db) > 0:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Setup already completed",
        )
    user = await create_user(db, email=user_data.email, password=user_data.password)
    token = create_access_token(user.id)
    _set_session_cookie(response, token)
    return Token(access_token=token)


@router.post("/login", response_model=Token)
async def login(
    credentials: UserLogin,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Login and start a session (cookie + bearer token)."""
    user = await authenticate_user(db, credentials.email, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = create_access_token(user.id)
    _set_session_cookie(response, token)
    return Token(access_token=token)


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(settings.session_cookie_name, path="/")
    return {"success": True}


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info"""
    return current_user
