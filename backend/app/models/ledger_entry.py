import enum

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from app.core.database import Base


class EntryType(str, enum.Enum):
    ACTIVITY_REWARD = "activity_reward"
    REWARD_PURCHASE = "reward_purchase"


class LedgerEntry(Base):
    """Append-only balance movement. Rows are never updated or deleted."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("mint_batch_id", "user_id", name="uq_transactions_batch_user"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    activity_id = Column(Integer, index=True, nullable=True)
    reward_id = Column(Integer, index=True, nullable=True)
    mint_batch_id = Column(Integer, index=True, nullable=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, index=True, nullable=False)
    tx_hash = Column(String, index=True, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
