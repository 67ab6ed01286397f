from __future__ import annotations

import csv
import io

from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.api.deps import get_ledger_service
from app.api.errors import processing_response, to_http_exception
from app.core.database import get_db
from app.core.security import CurrentUser, require_admin
from app.models.activity import Activity
from app.models.ledger_entry import EntryType, LedgerEntry
from app.models.mint_batch import MintBatch, MintBatchStatus
from app.models.reward import Reward
from app.models.user import User, UserRole
from app.schemas.ledger import BalanceMismatchResponse, LedgerEntryResponse, MintBatchResponse, MintResponse
from app.services.errors import LedgerError, LedgerInconsistencyError, MintPendingError
from app.services.ledger import LedgerService


router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/admin/stats")
async def admin_stats(db: Session = Depends(get_db)) -> dict:
    students = int(db.query(func.count(User.id)).filter(User.role == UserRole.STUDENT.value).scalar() or 0)
    activities = int(db.query(func.count(Activity.id)).scalar() or 0)
    rewards = int(db.query(func.count(Reward.id)).scalar() or 0)
    minted = int(
        db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.type == EntryType.ACTIVITY_REWARD.value)
        .scalar()
        or 0
    )
    redeemed = int(
        db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.type == EntryType.REWARD_PURCHASE.value)
        .scalar()
        or 0
    )
    pending_reconciliation = int(
        db.query(func.count(MintBatch.id))
        .filter(
            MintBatch.status.in_(
                [
                    MintBatchStatus.CHAIN_SUBMITTED.value,
                    MintBatchStatus.CHAIN_CONFIRMED.value,
                    MintBatchStatus.LEDGER_WRITE_FAILED.value,
                ]
            )
        )
        .scalar()
        or 0
    )
    return {
        "students": students,
        "activities": activities,
        "rewards": rewards,
        "tokens_minted": minted,
        "tokens_redeemed": -redeemed,
        "pending_reconciliation": pending_reconciliation,
    }


@router.get("/admin/mint-batches", response_model=list[MintBatchResponse])
async def admin_list_mint_batches(
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    ledger: LedgerService = Depends(get_ledger_service),
) -> list[MintBatch]:
    return ledger.list_batches(db, status=status, limit=limit, offset=offset)


@router.post("/admin/mint-batches/{batch_id}/reconcile", response_model=MintResponse)
def admin_reconcile_mint_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger_service),
):
    try:
        result = ledger.reconcile_batch(db, admin, batch_id)
    except (MintPendingError, LedgerInconsistencyError) as exc:
        return processing_response(exc)
    except LedgerError as exc:
        raise to_http_exception(exc)
    return MintResponse(
        batch_id=result.batch_id,
        tx_hash=result.tx_hash,
        transactions=[LedgerEntryResponse.model_validate(e) for e in result.entries],
        replayed=result.replayed,
    )


@router.get("/admin/ledger/audit", response_model=list[BalanceMismatchResponse])
async def admin_ledger_audit(
    db: Session = Depends(get_db),
    ledger: LedgerService = Depends(get_ledger_service),
) -> list[BalanceMismatchResponse]:
    return [
        BalanceMismatchResponse(user_id=m.user_id, stored_balance=m.stored_balance, ledger_sum=m.ledger_sum)
        for m in ledger.audit_balances(db)
    ]


@router.get("/admin/transactions.csv")
async def admin_download_transactions_csv(
    user_id: int | None = None,
    db: Session = Depends(get_db),
) -> Response:
    q = db.query(LedgerEntry)
    if user_id is not None:
        q = q.filter(LedgerEntry.user_id == user_id)
    rows = q.order_by(LedgerEntry.id.asc()).all()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "ID",
            "User ID",
            "Type",
            "Amount",
            "Activity ID",
            "Reward ID",
            "Mint Batch ID",
            "Tx Hash",
            "Description",
            "Created At",
        ]
    )
    for e in rows:
        writer.writerow(
            [
                int(e.id),
                int(e.user_id),
                e.type or "",
                int(e.amount or 0),
                e.activity_id or "",
                e.reward_id or "",
                e.mint_batch_id or "",
                e.tx_hash or "",
                e.description or "",
                str(e.created_at or ""),
            ]
        )

    filename = f"transactions-{user_id}.csv" if user_id is not None else "transactions.csv"
    return Response(
        content=output.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename=\"{filename}\""},
    )
