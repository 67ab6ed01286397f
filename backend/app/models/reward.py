import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base


class RewardStatus(str, enum.Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class Reward(Base):
    __tablename__ = "rewards"
    __table_args__ = (CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_rewards_quantity_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    token_cost = Column(Integer, nullable=False)
    # NULL means unlimited stock.
    quantity = Column(Integer, nullable=True)
    status = Column(String, index=True, nullable=False, default=RewardStatus.AVAILABLE.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
