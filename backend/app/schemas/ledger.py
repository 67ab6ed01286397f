from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class LedgerEntryResponse(BaseModel):
    id: int
    user_id: int
    activity_id: Optional[int] = None
    reward_id: Optional[int] = None
    mint_batch_id: Optional[int] = None
    amount: int
    type: str
    tx_hash: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MintRequest(BaseModel):
    user_ids: List[int] = Field(min_length=1)
    note: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class MintResponse(BaseModel):
    batch_id: int
    tx_hash: str
    transactions: List[LedgerEntryResponse]
    replayed: bool = False


class PurchaseResponse(BaseModel):
    success: bool = True
    transaction: LedgerEntryResponse
    new_balance: int


class MintBatchResponse(BaseModel):
    id: int
    idempotency_key: str
    activity_id: int
    user_ids: List[int]
    amount_per_account: int
    note: Optional[str] = None
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    attempts: Optional[int] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BalanceMismatchResponse(BaseModel):
    user_id: int
    stored_balance: int
    ledger_sum: int
