from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ActivityStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    COMPLETED = "completed"


class RegistrationStatus(str, Enum):
    REGISTERED = "registered"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ActivityCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str
    tokens: int = Field(gt=0)
    date: datetime
    location: str
    status: ActivityStatus = ActivityStatus.OPEN
    max_participants: Optional[int] = Field(default=None, gt=0)


class ActivityUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    tokens: Optional[int] = Field(default=None, gt=0)
    date: Optional[datetime] = None
    location: Optional[str] = None
    status: Optional[ActivityStatus] = None
    max_participants: Optional[int] = Field(default=None, gt=0)


class ActivityResponse(BaseModel):
    id: int
    title: str
    description: str
    tokens: int
    date: datetime
    location: str
    status: ActivityStatus
    max_participants: Optional[int] = None
    created_by: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RegistrationUpdate(BaseModel):
    status: RegistrationStatus


class RegistrationResponse(BaseModel):
    id: int
    user_id: int
    activity_id: int
    status: RegistrationStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ParticipantResponse(RegistrationResponse):
    name: str
    surname: str
    student_id: str
    email: str
    faculty: Optional[str] = None
    wallet_address: Optional[str] = None
