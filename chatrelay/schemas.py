"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# ============ Auth Schemas ============

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)


class UserLogin(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ============ Chat Schemas ============

class ChatResponse(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChatMessageResponse(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChatRename(BaseModel):
    title: str = Field(min_length=1, max_length=500)


class DeleteResult(BaseModel):
    deleted: int = 0
    success: bool = True
    detail: Optional[str] = None
