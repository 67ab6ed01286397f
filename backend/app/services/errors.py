from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    pass


class PermissionDeniedError(LedgerError):
    pass


class LedgerValidationError(LedgerError):
    """Rejected before any side effect."""


class AccountNotFoundError(LedgerValidationError):
    pass


class ActivityNotFoundError(LedgerValidationError):
    pass


class RewardNotFoundError(LedgerValidationError):
    pass


class RewardUnavailableError(LedgerValidationError):
    pass


class InsufficientBalanceError(LedgerValidationError):
    def __init__(self, balance: int, cost: int) -> None:
        super().__init__(f"Insufficient token balance: have {balance}, need {cost}")
        self.balance = balance
        self.cost = cost


class OutOfStockError(LedgerValidationError):
    pass


class MintValidationError(LedgerValidationError):
    def __init__(self, message: str, offenders: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.offenders = offenders or []


class ChainError(LedgerError):
    pass


class ChainSubmissionError(ChainError):
    """The chain rejected the mint. Nothing was written; safe to retry."""


class ChainEstimationError(ChainSubmissionError):
    pass


class ChainTimeoutError(ChainError):
    """Broadcast succeeded but no receipt arrived in time."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class MintInProgressError(LedgerError):
    pass


class MintPendingError(LedgerError):
    def __init__(self, message: str, batch_id: int, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.tx_hash = tx_hash


class LedgerInconsistencyError(LedgerError):
    """Tokens exist on chain but the ledger write did not commit."""

    def __init__(self, message: str, batch_id: int, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.tx_hash = tx_hash


class ConcurrencyConflictError(LedgerError):
    pass
