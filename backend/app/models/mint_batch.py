import enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base


class MintBatchStatus(str, enum.Enum):
    CHAIN_SUBMITTED = "chain_submitted"
    CHAIN_CONFIRMED = "chain_confirmed"
    CHAIN_FAILED = "chain_failed"
    LEDGER_COMMITTED = "ledger_committed"
    LEDGER_WRITE_FAILED = "ledger_write_failed"


class MintBatch(Base):
    __tablename__ = "mint_batches"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String, unique=True, index=True, nullable=False)
    activity_id = Column(Integer, index=True, nullable=False)
    user_ids = Column(JSON, nullable=False)
    amount_per_account = Column(Integer, nullable=False)
    note = Column(String, nullable=True)
    status = Column(String, index=True, nullable=False)
    tx_hash = Column(String, index=True, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0)
    created_by = Column(Integer, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
