from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.endpoints.auth import ensure_wallet_unused, normalize_wallet_address
from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user, require_admin
from app.core.settings import settings
from app.models.ledger_entry import LedgerEntry
from app.models.registration import Registration
from app.models.user import User, UserRole, UserStatus
from app.schemas.activity import RegistrationResponse
from app.schemas.ledger import LedgerEntryResponse
from app.schemas.user import LeaderboardRow, UserResponse, UserUpdate
from app.services.cache import TTLCache


router = APIRouter(dependencies=[Depends(get_current_user)])

leaderboard_cache = TTLCache(max_items=32, ttl_s=settings.leaderboard_cache_ttl_s)


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    offset: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
) -> list[User]:
    limit = max(1, min(int(limit or 50), 200))
    offset = max(0, int(offset or 0))
    return db.query(User).order_by(User.id.asc()).offset(offset).limit(limit).all()


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> User:
    if current_user.id != user_id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Unauthorized")
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    body: UserUpdate,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> User:
    if current_user.id != user_id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Unauthorized")

    updates = body.model_dump(exclude_unset=True)
    if ("role" in updates or "status" in updates) and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot update role")
    if "role" in updates and updates["role"] not in {r.value for r in UserRole}:
        raise HTTPException(status_code=400, detail="Invalid role")
    if "status" in updates and updates["status"] not in {s.value for s in UserStatus}:
        raise HTTPException(status_code=400, detail="Invalid status")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if "wallet_address" in updates:
        updates["wallet_address"] = normalize_wallet_address(updates["wallet_address"])
        ensure_wallet_unused(db, updates["wallet_address"], user_id=user.id)

    for field, value in updates.items():
        if field in {"name", "surname"} and not (value or "").strip():
            raise HTTPException(status_code=400, detail=f"{field} must not be empty")
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    return user


@router.get("/my/transactions", response_model=list[LedgerEntryResponse])
async def my_transactions(
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> list[LedgerEntry]:
    limit = max(1, min(int(limit or 50), 500))
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.user_id == current_user.id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


@router.get("/my/registrations", response_model=list[RegistrationResponse])
async def my_registrations(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> list[Registration]:
    return (
        db.query(Registration)
        .filter(Registration.user_id == current_user.id)
        .order_by(Registration.created_at.desc(), Registration.id.desc())
        .all()
    )


@router.get("/leaderboard", response_model=list[LeaderboardRow])
async def leaderboard(limit: int = 20, db: Session = Depends(get_db)) -> list[LeaderboardRow]:
    limit = max(1, min(int(limit or 20), 100))
    cache_key = f"leaderboard:{limit}"
    cached = leaderboard_cache.get(cache_key)
    if cached is not None:
        return cached

    rows = (
        db.query(User)
        .filter(User.role == UserRole.STUDENT.value)
        .order_by(User.token_balance.desc(), User.id.asc())
        .limit(limit)
        .all()
    )
    out = [
        LeaderboardRow(
            id=u.id,
            pseudonym=u.pseudonym or f"Student{u.id}",
            faculty=u.faculty,
            token_balance=int(u.token_balance or 0),
            created_at=u.created_at,
        )
        for u in rows
    ]
    leaderboard_cache.set(cache_key, out)
    return out
