from __future__ import annotations

import logging
import re

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import CurrentUser, create_access_token, get_current_user, hash_password, verify_password
from app.models.user import User, UserRole, UserStatus
from app.schemas.user import TokenResponse, UserLogin, UserRegister, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter()

_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _normalize_email(value: str) -> str:
    return str(value or "").strip().lower()


def normalize_wallet_address(value: str | None) -> str | None:
    wallet = str(value or "").strip()
    if not wallet:
        return None
    if not _WALLET_RE.match(wallet):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    return wallet


def ensure_wallet_unused(db: Session, wallet: str | None, user_id: int | None = None) -> None:
    if not wallet:
        return
    q = db.query(User).filter(User.wallet_address == wallet)
    if user_id is not None:
        q = q.filter(User.id != user_id)
    if q.first() is not None:
        raise HTTPException(status_code=400, detail="Wallet address already in use")


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(body: UserRegister, db: Session = Depends(get_db)) -> TokenResponse:
    if body.password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords don't match")

    email = _normalize_email(body.email)
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email")
    if db.query(User).filter(User.email == email).first() is not None:
        raise HTTPException(status_code=400, detail="Email already registered")
    student_id = body.student_id.strip()
    if db.query(User).filter(User.student_id == student_id).first() is not None:
        raise HTTPException(status_code=400, detail="Student ID already registered")
    wallet = normalize_wallet_address(body.wallet_address)
    ensure_wallet_unused(db, wallet)

    user = User(
        name=body.name.strip(),
        surname=body.surname.strip(),
        student_id=student_id,
        email=email,
        pseudonym=(body.pseudonym or "").strip() or None,
        faculty=(body.faculty or "").strip() or None,
        wallet_address=wallet,
        password=hash_password(body.password),
        role=UserRole.STUDENT.value,
        status=UserStatus.ACTIVE.value,
        token_balance=0,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("auth.register user_id=%s", user.id)
    return TokenResponse(access_token=create_access_token(user), user=UserResponse.model_validate(user))


@router.post("/login", response_model=TokenResponse)
async def login(body: UserLogin, db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == _normalize_email(body.email)).first()
    if user is None or not verify_password(body.password, user.password or ""):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if (user.status or "") != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=403, detail="Account is inactive")
    return TokenResponse(access_token=create_access_token(user), user=UserResponse.model_validate(user))


@router.get("/user", response_model=UserResponse)
async def current_user(db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)) -> User:
    row = db.query(User).filter(User.id == user.id).first()
    if row is None:
        raise HTTPException(status_code=404, detail="User not found")
    return row
