from __future__ import annotations

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from app.services.errors import (
    AccountNotFoundError,
    ActivityNotFoundError,
    ChainSubmissionError,
    ConcurrencyConflictError,
    LedgerError,
    LedgerInconsistencyError,
    LedgerValidationError,
    MintInProgressError,
    MintPendingError,
    MintValidationError,
    PermissionDeniedError,
    RewardNotFoundError,
)


def to_http_exception(exc: LedgerError) -> HTTPException:
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (AccountNotFoundError, ActivityNotFoundError, RewardNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MintValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "offenders": exc.offenders})
    if isinstance(exc, LedgerValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ChainSubmissionError):
        return HTTPException(status_code=502, detail={"message": str(exc), "retryable": True})
    if isinstance(exc, (MintInProgressError, ConcurrencyConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def processing_response(exc: MintPendingError | LedgerInconsistencyError) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": "processing",
            "message": "Processing, please check back",
            "batch_id": exc.batch_id,
            "tx_hash": exc.tx_hash,
        },
    )
