from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_ledger_service
from app.api.errors import to_http_exception
from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user, require_admin
from app.models.reward import Reward
from app.schemas.ledger import LedgerEntryResponse, PurchaseResponse
from app.schemas.reward import RewardCreate, RewardResponse, RewardUpdate
from app.services.errors import LedgerError
from app.services.ledger import LedgerService


router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/rewards", response_model=list[RewardResponse])
async def list_rewards(status: str | None = None, db: Session = Depends(get_db)) -> list[Reward]:
    q = db.query(Reward)
    if status and status != "all":
        q = q.filter(Reward.status == status)
    return q.order_by(Reward.token_cost.asc(), Reward.id.asc()).all()


@router.post("/rewards", response_model=RewardResponse, status_code=201)
async def create_reward(
    body: RewardCreate,
    db: Session = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
) -> Reward:
    reward = Reward(
        title=body.title.strip(),
        description=body.description,
        token_cost=body.token_cost,
        quantity=body.quantity,
        status=body.status.value,
    )
    db.add(reward)
    db.commit()
    db.refresh(reward)
    return reward


@router.patch("/rewards/{reward_id}", response_model=RewardResponse)
async def update_reward(
    reward_id: int,
    body: RewardUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger_service),
) -> Reward:
    reward = db.query(Reward).filter(Reward.id == reward_id).first()
    if reward is None:
        raise HTTPException(status_code=404, detail="Reward not found")
    updates = body.model_dump(exclude_unset=True)
    quantity_set = "quantity" in updates
    quantity = updates.pop("quantity", None)
    for field, value in updates.items():
        if value is None:
            continue
        if field == "status":
            value = value.value
        setattr(reward, field, value)
    db.commit()
    if quantity_set:
        try:
            reward = ledger.set_reward_stock(db, admin, reward_id, quantity)
        except LedgerError as exc:
            raise to_http_exception(exc)
    db.refresh(reward)
    return reward


@router.post("/rewards/{reward_id}/purchase", response_model=PurchaseResponse, status_code=201)
def purchase_reward(
    reward_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> PurchaseResponse:
    try:
        result = ledger.debit_for_purchase(db, current_user, reward_id)
    except LedgerError as exc:
        raise to_http_exception(exc)
    return PurchaseResponse(
        transaction=LedgerEntryResponse.model_validate(result.entry),
        new_balance=result.new_balance,
    )
