from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import get_ledger_service
from app.api.errors import processing_response, to_http_exception
from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user, require_admin
from app.models.activity import Activity, ActivityStatus
from app.models.registration import Registration, RegistrationStatus
from app.models.user import User
from app.schemas.activity import (
    ActivityCreate,
    ActivityResponse,
    ActivityUpdate,
    ParticipantResponse,
    RegistrationResponse,
    RegistrationUpdate,
)
from app.schemas.ledger import LedgerEntryResponse, MintRequest, MintResponse
from app.services.errors import LedgerError, LedgerInconsistencyError, MintPendingError
from app.services.ledger import LedgerService, activity_has_minted

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(get_current_user)])


def _get_activity_or_404(db: Session, activity_id: int) -> Activity:
    activity = db.query(Activity).filter(Activity.id == activity_id).first()
    if activity is None:
        raise HTTPException(status_code=404, detail="Activity not found")
    return activity


@router.get("/activities", response_model=list[ActivityResponse])
async def list_activities(
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
) -> list[Activity]:
    limit = max(1, min(int(limit or 50), 200))
    offset = max(0, int(offset or 0))
    q = db.query(Activity)
    if status and status != "all":
        q = q.filter(Activity.status == status)
    return q.order_by(Activity.date.desc(), Activity.id.desc()).offset(offset).limit(limit).all()


@router.get("/activities/{activity_id}", response_model=ActivityResponse)
async def get_activity(activity_id: int, db: Session = Depends(get_db)) -> Activity:
    return _get_activity_or_404(db, activity_id)


@router.post("/activities", response_model=ActivityResponse, status_code=201)
async def create_activity(
    body: ActivityCreate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
) -> Activity:
    activity = Activity(
        title=body.title.strip(),
        description=body.description,
        tokens=body.tokens,
        date=body.date,
        location=body.location,
        status=body.status.value,
        max_participants=body.max_participants,
        created_by=admin.id,
    )
    db.add(activity)
    db.commit()
    db.refresh(activity)
    logger.info("activities.create activity_id=%s tokens=%s", activity.id, activity.tokens)
    return activity


@router.patch("/activities/{activity_id}", response_model=ActivityResponse)
async def update_activity(
    activity_id: int,
    body: ActivityUpdate,
    db: Session = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
) -> Activity:
    activity = _get_activity_or_404(db, activity_id)
    updates = body.model_dump(exclude_unset=True)
    if "tokens" in updates and updates["tokens"] != activity.tokens and activity_has_minted(db, activity_id):
        raise HTTPException(status_code=400, detail="Token reward cannot change after minting has started")
    for field, value in updates.items():
        if value is None and field != "max_participants":
            continue
        if field == "status":
            value = value.value
        setattr(activity, field, value)
    db.commit()
    db.refresh(activity)
    return activity


@router.get("/activities/{activity_id}/registrations")
async def list_activity_registrations(
    activity_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    _get_activity_or_404(db, activity_id)
    if current_user.is_admin:
        rows = (
            db.query(Registration, User)
            .join(User, User.id == Registration.user_id)
            .filter(Registration.activity_id == activity_id)
            .order_by(Registration.id.asc())
            .all()
        )
        return [
            ParticipantResponse(
                id=reg.id,
                user_id=reg.user_id,
                activity_id=reg.activity_id,
                status=reg.status,
                created_at=reg.created_at,
                updated_at=reg.updated_at,
                name=user.name,
                surname=user.surname,
                student_id=user.student_id,
                email=user.email,
                faculty=user.faculty,
                wallet_address=user.wallet_address,
            ).model_dump()
            for reg, user in rows
        ]
    regs = (
        db.query(Registration)
        .filter(Registration.activity_id == activity_id)
        .order_by(Registration.id.asc())
        .all()
    )
    return [RegistrationResponse.model_validate(r).model_dump() for r in regs]


@router.post("/activities/{activity_id}/register", response_model=RegistrationResponse, status_code=201)
async def register_for_activity(
    activity_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> Registration:
    activity = _get_activity_or_404(db, activity_id)
    if activity.status != ActivityStatus.OPEN.value:
        raise HTTPException(status_code=400, detail="Activity is not open for registration")

    existing = (
        db.query(Registration)
        .filter(Registration.user_id == current_user.id, Registration.activity_id == activity_id)
        .first()
    )
    if existing is not None:
        raise HTTPException(status_code=400, detail="Already registered for this activity")

    if activity.max_participants:
        taken = int(
            db.query(func.count(Registration.id))
            .filter(
                Registration.activity_id == activity_id,
                Registration.status != RegistrationStatus.REJECTED.value,
            )
            .scalar()
            or 0
        )
        if taken >= int(activity.max_participants):
            raise HTTPException(status_code=400, detail="Activity is full")

    registration = Registration(
        user_id=current_user.id,
        activity_id=activity_id,
        status=RegistrationStatus.REGISTERED.value,
    )
    db.add(registration)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Already registered for this activity")
    db.refresh(registration)
    return registration


@router.patch("/registrations/{registration_id}", response_model=RegistrationResponse)
async def update_registration(
    registration_id: int,
    body: RegistrationUpdate,
    db: Session = Depends(get_db),
    _admin: CurrentUser = Depends(require_admin),
) -> Registration:
    registration = db.query(Registration).filter(Registration.id == registration_id).first()
    if registration is None:
        raise HTTPException(status_code=404, detail="Registration not found")
    registration.status = body.status.value
    db.commit()
    db.refresh(registration)
    return registration


@router.post("/activities/{activity_id}/mint", response_model=MintResponse, status_code=201)
def mint_activity_tokens(
    activity_id: int,
    body: MintRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
):
    try:
        result = ledger.credit_for_activity(
            db,
            current_user,
            activity_id,
            body.user_ids,
            note=body.note,
            idempotency_key=body.idempotency_key,
        )
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
