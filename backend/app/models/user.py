import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("token_balance >= 0", name="ck_users_token_balance_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    surname = Column(String, nullable=False)
    student_id = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    pseudonym = Column(String, nullable=True)
    faculty = Column(String, nullable=True)
    wallet_address = Column(String, index=True, nullable=True)
    password = Column(String, nullable=False)
    role = Column(String, index=True, nullable=False, default=UserRole.STUDENT.value)
    status = Column(String, nullable=False, default=UserStatus.ACTIVE.value)
    # Written only by app.services.ledger.
    token_balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
