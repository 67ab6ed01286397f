"""Ledger consistency service.

Every change to ``users.token_balance`` or ``rewards.quantity`` goes through
this module, and every balance change is paired with exactly one row in the
append-only ``transactions`` table.

A credit batch moves through ``chain_submitted -> chain_confirmed ->
ledger_committed``. The chain call always happens before the storage
transaction that writes the ledger, and no row lock is held across it. A batch
whose mint landed on chain but whose ledger write could not commit is parked
as ``ledger_write_failed`` and can be re-applied with ``reconcile_batch``
using the stored transaction hash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.security import CurrentUser
from app.core.settings import settings
from app.models.activity import Activity
from app.models.ledger_entry import EntryType, LedgerEntry
from app.models.mint_batch import MintBatch, MintBatchStatus
from app.models.registration import Registration, RegistrationStatus
from app.models.reward import Reward, RewardStatus
from app.models.user import User
from app.services.cache import make_hash_key
from app.services.errors import (
    AccountNotFoundError,
    ActivityNotFoundError,
    ChainSubmissionError,
    ChainTimeoutError,
    ConcurrencyConflictError,
    InsufficientBalanceError,
    LedgerError,
    LedgerInconsistencyError,
    LedgerValidationError,
    MintInProgressError,
    MintPendingError,
    MintValidationError,
    OutOfStockError,
    PermissionDeniedError,
    RewardNotFoundError,
    RewardUnavailableError,
)
from app.services.token_authority import TX_CONFIRMED, TX_FAILED, TokenAuthority, get_token_authority

logger = logging.getLogger(__name__)

UNKNOWN_OUTCOME_PREFIX = "outcome unknown: "


@dataclass
class CreditResult:
    batch_id: int
    tx_hash: str
    entries: list[LedgerEntry]
    replayed: bool = False


@dataclass
class DebitResult:
    new_balance: int
    entry: LedgerEntry


@dataclass
class BalanceMismatch:
    user_id: int
    stored_balance: int
    ledger_sum: int


def mint_idempotency_key(activity_id: int, user_ids: Iterable[int]) -> str:
    return make_hash_key("mint", {"activity_id": int(activity_id), "user_ids": sorted({int(u) for u in user_ids})})


def ledger_sum(db: Session, user_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.user_id == user_id)
        .scalar()
    )
    return int(total or 0)


def activity_has_minted(db: Session, activity_id: int) -> bool:
    row = (
        db.query(MintBatch.id)
        .filter(MintBatch.activity_id == activity_id, MintBatch.status != MintBatchStatus.CHAIN_FAILED.value)
        .first()
    )
    return row is not None


def _older_than(ts: datetime | None, seconds: int) -> bool:
    if ts is None:
        return True
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - ts > timedelta(seconds=seconds)


def _dedupe_ids(user_ids: Iterable[Any]) -> list[int]:
    out: list[int] = []
    seen: set[int] = set()
    for raw in user_ids or []:
        try:
            uid = int(raw)
        except (TypeError, ValueError):
            raise MintValidationError(f"Invalid user id: {raw!r}")
        if uid in seen:
            continue
        seen.add(uid)
        out.append(uid)
    return out


class LedgerService:
    def __init__(
        self,
        token_authority: TokenAuthority | None = None,
        *,
        max_retries: int | None = None,
        require_confirmed_registration: bool | None = None,
    ) -> None:
        self._token_authority = token_authority
        self._max_retries = max(1, int(max_retries if max_retries is not None else settings.ledger_max_retries))
        if require_confirmed_registration is None:
            require_confirmed_registration = settings.mint_require_confirmed_registration
        self._require_confirmed = bool(require_confirmed_registration)

    @property
    def token_authority(self) -> TokenAuthority:
        if self._token_authority is None:
            self._token_authority = get_token_authority()
        return self._token_authority

    @staticmethod
    def _require_admin(actor: CurrentUser, action: str) -> None:
        if not actor.is_admin:
            raise PermissionDeniedError(f"Admin access required to {action}")

    # Credit

    def credit_for_activity(
        self,
        db: Session,
        actor: CurrentUser,
        activity_id: int,
        user_ids: Iterable[Any],
        note: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditResult:
        self._require_admin(actor, "mint tokens")
        ids = _dedupe_ids(user_ids)
        if not ids:
            raise MintValidationError("User IDs are required")
        key = (idempotency_key or "").strip() or mint_idempotency_key(activity_id, ids)

        batch = db.query(MintBatch).filter(MintBatch.idempotency_key == key).first()
        if batch is not None:
            if int(batch.activity_id) != int(activity_id) or sorted(batch.user_ids or []) != sorted(ids):
                raise MintValidationError("Idempotency key was already used for a different batch")
            replay = self._resume_batch(db, batch)
            if replay is not None:
                return replay

        activity = db.query(Activity).filter(Activity.id == activity_id).first()
        if activity is None:
            raise ActivityNotFoundError(f"Activity {activity_id} not found")
        amount = int(activity.tokens or 0)
        if amount <= 0:
            raise MintValidationError("Activity has no token reward")

        wallets = self._validate_recipients(db, activity, ids)

        if batch is None:
            batch = MintBatch(
                idempotency_key=key,
                activity_id=activity.id,
                user_ids=ids,
                created_by=actor.id,
                attempts=0,
            )
            db.add(batch)
        batch.status = MintBatchStatus.CHAIN_SUBMITTED.value
        batch.amount_per_account = amount
        batch.note = (note or "").strip() or None
        batch.tx_hash = None
        batch.error = None
        batch.attempts = int(batch.attempts or 0) + 1
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise MintInProgressError("A mint with this idempotency key is already being processed")
        batch_id = batch.id
        logger.info(
            "ledger.mint.chain_submitted batch_id=%s activity_id=%s recipients=%s amount=%s",
            batch_id,
            activity_id,
            len(ids),
            amount,
        )

        try:
            tx_hash = self.token_authority.batch_mint([wallets[uid] for uid in ids], [amount] * len(ids))
        except ChainTimeoutError as exc:
            batch.tx_hash = exc.tx_hash
            batch.error = str(exc)
            db.commit()
            logger.warning("ledger.mint.chain_timeout batch_id=%s tx_hash=%s", batch_id, exc.tx_hash)
            raise MintPendingError(
                "Mint was broadcast but not yet confirmed; please check back",
                batch_id=batch_id,
                tx_hash=exc.tx_hash,
            ) from exc
        except ChainSubmissionError as exc:
            batch.status = MintBatchStatus.CHAIN_FAILED.value
            batch.error = str(exc)
            db.commit()
            logger.warning("ledger.mint.chain_failed batch_id=%s error=%s", batch_id, exc)
            raise
        except Exception as exc:
            # Outcome unknown: the mint may have been broadcast. Keep the batch
            # open so reconcile_batch can settle it.
            db.rollback()
            batch = db.query(MintBatch).filter(MintBatch.id == batch_id).one()
            batch.error = f"{UNKNOWN_OUTCOME_PREFIX}{type(exc).__name__}: {exc}"[:2000]
            db.commit()
            logger.exception("ledger.mint.chain_unknown batch_id=%s", batch_id)
            raise MintPendingError(
                "Mint outcome is unknown; processing, please check back",
                batch_id=batch_id,
            ) from exc

        batch.tx_hash = tx_hash
        batch.status = MintBatchStatus.CHAIN_CONFIRMED.value
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "ledger.mint.reconciliation_required batch_id=%s tx_hash=%s stage=record_tx error=%s",
                batch_id,
                tx_hash,
                exc,
            )
            raise LedgerInconsistencyError(
                "Tokens were minted but could not be recorded; processing, please check back",
                batch_id=batch_id,
                tx_hash=tx_hash,
            ) from exc
        logger.info("ledger.mint.chain_confirmed batch_id=%s tx_hash=%s", batch_id, tx_hash)

        return self._commit_ledger(db, batch_id, tx_hash)

    def _resume_batch(self, db: Session, batch: MintBatch) -> CreditResult | None:
        status = batch.status
        if status == MintBatchStatus.LEDGER_COMMITTED.value:
            logger.info("ledger.mint.replay batch_id=%s", batch.id)
            return CreditResult(
                batch_id=batch.id,
                tx_hash=batch.tx_hash or "",
                entries=self._batch_entries(db, batch),
                replayed=True,
            )
        if status in (MintBatchStatus.CHAIN_CONFIRMED.value, MintBatchStatus.LEDGER_WRITE_FAILED.value):
            logger.info("ledger.mint.resume batch_id=%s status=%s", batch.id, status)
            return self._commit_ledger(db, batch.id, batch.tx_hash or "")
        if status == MintBatchStatus.CHAIN_SUBMITTED.value:
            raise MintInProgressError(f"Mint batch {batch.id} is still waiting for the chain")
        return None

    def _validate_recipients(self, db: Session, activity: Activity, ids: list[int]) -> dict[int, str]:
        users = {u.id: u for u in db.query(User).filter(User.id.in_(ids)).all()}
        registrations = {
            r.user_id: r
            for r in db.query(Registration)
            .filter(Registration.activity_id == activity.id, Registration.user_id.in_(ids))
            .all()
        }
        already_rewarded = {
            uid
            for (uid,) in db.query(LedgerEntry.user_id)
            .filter(
                LedgerEntry.activity_id == activity.id,
                LedgerEntry.type == EntryType.ACTIVITY_REWARD.value,
                LedgerEntry.user_id.in_(ids),
            )
            .distinct()
            .all()
        }
        # Accounts in a batch that may still land on chain count as taken.
        in_flight: set[int] = set()
        for (batch_user_ids,) in (
            db.query(MintBatch.user_ids)
            .filter(
                MintBatch.activity_id == activity.id,
                MintBatch.status.in_(
                    [
                        MintBatchStatus.CHAIN_SUBMITTED.value,
                        MintBatchStatus.CHAIN_CONFIRMED.value,
                        MintBatchStatus.LEDGER_WRITE_FAILED.value,
                        MintBatchStatus.LEDGER_COMMITTED.value,
                    ]
                ),
            )
            .all()
        ):
            in_flight.update(int(u) for u in (batch_user_ids or []))

        offenders: list[dict[str, Any]] = []
        wallets: dict[int, str] = {}
        for uid in ids:
            user = users.get(uid)
            if user is None:
                offenders.append({"user_id": uid, "reasons": ["not_found"]})
                continue
            reasons: list[str] = []
            wallet = (user.wallet_address or "").strip()
            if not wallet:
                reasons.append("missing_wallet")
            if self._require_confirmed:
                reg = registrations.get(uid)
                if reg is None or reg.status != RegistrationStatus.CONFIRMED.value:
                    reasons.append("not_confirmed")
            if uid in already_rewarded:
                reasons.append("already_rewarded")
            elif uid in in_flight:
                reasons.append("mint_in_progress")
            if reasons:
                offenders.append({"user_id": uid, "reasons": reasons})
            else:
                wallets[uid] = wallet

        if offenders:
            logger.info(
                "ledger.mint.validation_failed activity_id=%s offenders=%s",
                activity.id,
                [o["user_id"] for o in offenders],
            )
            raise MintValidationError(f"{len(offenders)} account(s) cannot receive tokens", offenders=offenders)
        return wallets

    def _commit_ledger(self, db: Session, batch_id: int, tx_hash: str) -> CreditResult:
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                entries = self._apply_mint_entries(db, batch_id)
                db.commit()
            except (OperationalError, ConcurrencyConflictError) as exc:
                db.rollback()
                last_error = exc
                logger.warning("ledger.mint.ledger_retry batch_id=%s attempt=%s error=%s", batch_id, attempt, exc)
                continue
            except SQLAlchemyError as exc:
                db.rollback()
                last_error = exc
                break
            logger.info("ledger.mint.committed batch_id=%s tx_hash=%s entries=%s", batch_id, tx_hash, len(entries))
            return CreditResult(batch_id=batch_id, tx_hash=tx_hash, entries=entries)

        self._mark_ledger_write_failed(db, batch_id, last_error)
        logger.error(
            "ledger.mint.reconciliation_required batch_id=%s tx_hash=%s stage=ledger_write error=%s",
            batch_id,
            tx_hash,
            last_error,
        )
        raise LedgerInconsistencyError(
            "Tokens were minted but the ledger write failed; processing, please check back",
            batch_id=batch_id,
            tx_hash=tx_hash,
        )

    def _apply_mint_entries(self, db: Session, batch_id: int) -> list[LedgerEntry]:
        batch = (
            db.query(MintBatch)
            .filter(MintBatch.id == batch_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        user_ids = [int(u) for u in (batch.user_ids or [])]
        existing = {
            e.user_id: e
            for e in db.query(LedgerEntry).filter(LedgerEntry.mint_batch_id == batch_id).all()
        }
        if batch.status == MintBatchStatus.LEDGER_COMMITTED.value:
            return [existing[uid] for uid in user_ids if uid in existing]

        # Lock balance rows in id order so concurrent batches cannot deadlock.
        db.query(User.id).filter(User.id.in_(user_ids)).order_by(User.id).with_for_update().all()

        activity = db.query(Activity).filter(Activity.id == batch.activity_id).first()
        description = batch.note or f"Tokens for {activity.title if activity else f'activity {batch.activity_id}'}"
        amount = int(batch.amount_per_account)

        entries: list[LedgerEntry] = []
        for uid in user_ids:
            entry = existing.get(uid)
            if entry is None:
                entry = LedgerEntry(
                    user_id=uid,
                    activity_id=batch.activity_id,
                    mint_batch_id=batch_id,
                    amount=amount,
                    type=EntryType.ACTIVITY_REWARD.value,
                    tx_hash=batch.tx_hash,
                    description=description,
                )
                db.add(entry)
                result = db.execute(
                    update(User)
                    .where(User.id == uid)
                    .values(token_balance=User.token_balance + amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflictError(f"Balance row for user {uid} could not be updated")
            entries.append(entry)

        batch.status = MintBatchStatus.LEDGER_COMMITTED.value
        batch.error = None
        db.flush()
        return entries

    def _mark_ledger_write_failed(self, db: Session, batch_id: int, error: Exception | None) -> None:
        try:
            batch = db.query(MintBatch).filter(MintBatch.id == batch_id).first()
            if batch is not None and batch.status != MintBatchStatus.LEDGER_COMMITTED.value:
                batch.status = MintBatchStatus.LEDGER_WRITE_FAILED.value
                batch.error = str(error or "ledger write failed")[:2000]
                db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("ledger.mint.mark_failed.error batch_id=%s", batch_id)

    @staticmethod
    def _batch_entries(db: Session, batch: MintBatch) -> list[LedgerEntry]:
        return (
            db.query(LedgerEntry)
            .filter(LedgerEntry.mint_batch_id == batch.id)
            .order_by(LedgerEntry.id.asc())
            .all()
        )

    # Debit

    def debit_for_purchase(self, db: Session, actor: CurrentUser, reward_id: int) -> DebitResult:
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                result = self._purchase_once(db, actor.id, reward_id)
                db.commit()
            except (ConcurrencyConflictError, OperationalError) as exc:
                db.rollback()
                last_error = exc
                logger.warning(
                    "ledger.purchase.retry user_id=%s reward_id=%s attempt=%s error=%s",
                    actor.id,
                    reward_id,
                    attempt,
                    exc,
                )
                continue
            except LedgerError:
                db.rollback()
                raise
            logger.info(
                "ledger.purchase.committed user_id=%s reward_id=%s amount=%s new_balance=%s",
                actor.id,
                reward_id,
                result.entry.amount,
                result.new_balance,
            )
            return result

        raise ConcurrencyConflictError(f"Purchase could not be completed after {self._max_retries} attempts: {last_error}")

    def _purchase_once(self, db: Session, user_id: int, reward_id: int) -> DebitResult:
        account = db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
        if account is None:
            raise AccountNotFoundError(f"User {user_id} not found")
        reward = db.query(Reward).filter(Reward.id == reward_id).with_for_update().populate_existing().first()
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        if reward.status != RewardStatus.AVAILABLE.value:
            raise RewardUnavailableError("Reward is not available")
        if reward.quantity is not None and int(reward.quantity) <= 0:
            raise OutOfStockError("Reward is out of stock")

        cost = int(reward.token_cost)
        balance = int(account.token_balance or 0)
        if balance < cost:
            raise InsufficientBalanceError(balance, cost)

        if reward.quantity is not None:
            result = db.execute(
                update(Reward)
                .where(Reward.id == reward.id, Reward.quantity > 0)
                .values(quantity=Reward.quantity - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflictError("Reward stock changed during purchase")

        result = db.execute(
            update(User)
            .where(User.id == account.id, User.token_balance >= cost)
            .values(token_balance=User.token_balance - cost)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Balance changed during purchase")

        entry = LedgerEntry(
            user_id=account.id,
            reward_id=reward.id,
            amount=-cost,
            type=EntryType.REWARD_PURCHASE.value,
            tx_hash=None,
            description=f"Purchase: {reward.title}",
        )
        db.add(entry)
        db.flush()

        new_balance = db.query(User.token_balance).filter(User.id == account.id).scalar()
        return DebitResult(new_balance=int(new_balance or 0), entry=entry)

    def set_reward_stock(self, db: Session, actor: CurrentUser, reward_id: int, quantity: int | None) -> Reward:
        self._require_admin(actor, "restock rewards")
        if quantity is not None and int(quantity) < 0:
            raise LedgerValidationError("Quantity must not be negative")
        reward = db.query(Reward).filter(Reward.id == reward_id).with_for_update().populate_existing().first()
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        previous = reward.quantity
        reward.quantity = None if quantity is None else int(quantity)
        db.commit()
        db.refresh(reward)
        logger.info("ledger.reward.restock reward_id=%s previous=%s quantity=%s", reward_id, previous, reward.quantity)
        return reward

    # Reconciliation

    def reconcile_batch(self, db: Session, actor: CurrentUser, batch_id: int) -> CreditResult:
        self._require_admin(actor, "reconcile mint batches")
        batch = db.query(MintBatch).filter(MintBatch.id == batch_id).first()
        if batch is None:
            raise LedgerValidationError(f"Mint batch {batch_id} not found")

        status = batch.status
        if status == MintBatchStatus.CHAIN_FAILED.value:
            raise LedgerValidationError("Batch failed on chain; submit the mint again")
        if status == MintBatchStatus.CHAIN_SUBMITTED.value:
            if not batch.tx_hash:
                return self._settle_unhashed_batch(db, batch)
            chain_status = self.token_authority.transaction_status(batch.tx_hash)
            logger.info("ledger.reconcile.chain_status batch_id=%s tx_hash=%s status=%s", batch.id, batch.tx_hash, chain_status)
            if chain_status == TX_FAILED:
                batch.status = MintBatchStatus.CHAIN_FAILED.value
                batch.error = "transaction reverted"
                db.commit()
                raise ChainSubmissionError(f"Mint transaction {batch.tx_hash} reverted")
            if chain_status != TX_CONFIRMED:
                raise MintPendingError("Mint transaction is still pending", batch_id=batch.id, tx_hash=batch.tx_hash)
            batch.status = MintBatchStatus.CHAIN_CONFIRMED.value
            db.commit()

        result = self._resume_batch(db, batch)
        if result is None:
            raise LedgerValidationError(f"Batch {batch_id} cannot be reconciled from status {status}")
        return result

    def _settle_unhashed_batch(self, db: Session, batch: MintBatch) -> CreditResult:
        """Close a submitted batch that never got a transaction hash.

        Without a hash the chain cannot be asked about the batch. Once the
        submitting request has given up (or has been silent past twice the
        receipt timeout) the batch is marked failed so the mint can be sent
        again. An operator should check the minter account first.
        """
        gave_up = (batch.error or "").startswith(UNKNOWN_OUTCOME_PREFIX)
        if not gave_up and not _older_than(batch.updated_at, 2 * int(settings.chain_receipt_timeout_s)):
            raise MintPendingError("Mint batch is still being submitted", batch_id=batch.id)

        batch.status = MintBatchStatus.CHAIN_FAILED.value
        batch.error = f"no transaction hash recorded; {batch.error or 'submission abandoned'}"[:2000]
        db.commit()
        logger.warning(
            "ledger.reconcile.unhashed_failed batch_id=%s activity_id=%s recipients=%s",
            batch.id,
            batch.activity_id,
            len(batch.user_ids or []),
        )
        raise ChainSubmissionError(
            f"Mint batch {batch.id} has no transaction hash and was marked failed; "
            "check the minter account before submitting again"
        )

    def list_batches(
        self,
        db: Session,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MintBatch]:
        q = db.query(MintBatch)
        if status:
            q = q.filter(MintBatch.status == status)
        limit = max(1, min(int(limit or 50), 200))
        offset = max(0, int(offset or 0))
        return q.order_by(MintBatch.created_at.desc(), MintBatch.id.desc()).offset(offset).limit(limit).all()

    def audit_balances(self, db: Session) -> list[BalanceMismatch]:
        sums = {
            int(uid): int(total or 0)
            for uid, total in db.query(LedgerEntry.user_id, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .group_by(LedgerEntry.user_id)
            .all()
        }
        out: list[BalanceMismatch] = []
        for uid, balance in db.query(User.id, User.token_balance).order_by(User.id.asc()).all():
            expected = sums.get(int(uid), 0)
            if int(balance or 0) != expected:
                out.append(BalanceMismatch(user_id=int(uid), stored_balance=int(balance or 0), ledger_sum=expected))
        if out:
            logger.error("ledger.audit.mismatch accounts=%s", [m.user_id for m in out])
        return out
