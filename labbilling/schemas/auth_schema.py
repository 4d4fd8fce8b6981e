"""
Pydantic schemas for signing in to the backend.
"""
from typing import Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class SessionInfo(BaseModel):
    authenticated: bool
    user_id: Optional[str] = None
