from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class UserRegister(BaseModel):
    name: str = Field(min_length=1)
    surname: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    confirm_password: str
    pseudonym: Optional[str] = None
    faculty: Optional[str] = None
    wallet_address: Optional[str] = None


class UserLogin(BaseModel):
    email: str
    password: str = Field(min_length=6)


class UserUpdate(BaseModel):
    name: Optional[str] = None
    surname: Optional[str] = None
    pseudonym: Optional[str] = None
    faculty: Optional[str] = None
    wallet_address: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    name: str
    surname: str
    student_id: str
    email: str
    pseudonym: Optional[str] = None
    faculty: Optional[str] = None
    wallet_address: Optional[str] = None
    role: str
    status: str
    token_balance: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class LeaderboardRow(BaseModel):
    id: int
    pseudonym: str
    faculty: Optional[str] = None
    token_balance: int
    created_at: Optional[datetime] = None
