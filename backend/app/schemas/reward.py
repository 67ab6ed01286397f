from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RewardStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class RewardCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str
    token_cost: int = Field(gt=0)
    quantity: Optional[int] = Field(default=None, ge=0)
    status: RewardStatus = RewardStatus.AVAILABLE


class RewardUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    token_cost: Optional[int] = Field(default=None, gt=0)
    quantity: Optional[int] = Field(default=None, ge=0)
    status: Optional[RewardStatus] = None


class RewardResponse(BaseModel):
    id: int
    title: str
    description: str
    token_cost: int
    quantity: Optional[int] = None
    status: RewardStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
