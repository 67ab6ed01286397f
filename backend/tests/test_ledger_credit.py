import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError

from _support import FakeTokenAuthority, actor_for, confirm, make_activity, make_session_factory, make_user
from app.models.ledger_entry import LedgerEntry
from app.models.mint_batch import MintBatch, MintBatchStatus
from app.models.user import User
from app.services.errors import (
    ActivityNotFoundError,
    ChainSubmissionError,
    LedgerInconsistencyError,
    LedgerValidationError,
    MintInProgressError,
    MintPendingError,
    MintValidationError,
    PermissionDeniedError,
)
from app.services.ledger import LedgerService, activity_has_minted, ledger_sum, mint_idempotency_key
from app.services.token_authority import TX_FAILED, TX_PENDING


def _locked() -> OperationalError:
    return OperationalError("UPDATE users", {}, Exception("database is locked"))


class CreditForActivityTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()
        self.chain = FakeTokenAuthority()
        self.service = LedgerService(self.chain, max_retries=2, require_confirmed_registration=True)
        self.admin = actor_for(make_user(self.db, role="admin", wallet=False))
        self.activity = make_activity(self.db, tokens=10, created_by=self.admin.id)
        self.students = [make_user(self.db) for _ in range(3)]
        for s in self.students:
            confirm(self.db, s, self.activity)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _ids(self):
        return [s.id for s in self.students]

    def _entries(self):
        return self.db.query(LedgerEntry).filter(LedgerEntry.activity_id == self.activity.id).all()

    def _assert_balances_reconcile(self):
        for user in self.db.query(User).all():
            self.assertEqual(user.token_balance, ledger_sum(self.db, user.id), f"user {user.id}")
        self.assertEqual(self.service.audit_balances(self.db), [])

    def test_batch_of_three_credits_each_account_once(self):
        result = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids(), note="Thanks!")

        self.assertEqual(len(self.chain.calls), 1)
        addresses, amounts = self.chain.calls[0]
        self.assertEqual(addresses, [s.wallet_address for s in self.students])
        self.assertEqual(amounts, [10, 10, 10])

        self.assertEqual(len(result.entries), 3)
        self.assertEqual({e.amount for e in result.entries}, {10})
        self.assertEqual({e.tx_hash for e in result.entries}, {result.tx_hash})
        self.assertEqual({e.description for e in result.entries}, {"Thanks!"})
        self.assertFalse(result.replayed)
        for s in self.students:
            self.db.refresh(s)
            self.assertEqual(s.token_balance, 10)

        batch = self.db.query(MintBatch).one()
        self.assertEqual(batch.status, MintBatchStatus.LEDGER_COMMITTED.value)
        self.assertEqual(batch.tx_hash, result.tx_hash)
        self.assertTrue(activity_has_minted(self.db, self.activity.id))
        self._assert_balances_reconcile()

    def test_missing_wallet_fails_whole_batch_and_names_offender(self):
        self.students[1].wallet_address = None
        self.db.commit()

        with self.assertRaises(MintValidationError) as ctx:
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.assertEqual(ctx.exception.offenders, [{"user_id": self.students[1].id, "reasons": ["missing_wallet"]}])
        self.assertEqual(self.chain.calls, [])
        self.assertEqual(self._entries(), [])
        self.assertEqual(self.db.query(MintBatch).count(), 0)
        for s in self.students:
            self.db.refresh(s)
            self.assertEqual(s.token_balance, 0)

    def test_all_offenders_reported_together(self):
        outsider = make_user(self.db)
        self.students[0].wallet_address = None
        self.db.commit()

        with self.assertRaises(MintValidationError) as ctx:
            self.service.credit_for_activity(
                self.db, self.admin, self.activity.id, self._ids() + [outsider.id, 99999]
            )

        by_user = {o["user_id"]: o["reasons"] for o in ctx.exception.offenders}
        self.assertEqual(by_user[self.students[0].id], ["missing_wallet"])
        self.assertEqual(by_user[outsider.id], ["not_confirmed"])
        self.assertEqual(by_user[99999], ["not_found"])
        self.assertNotIn(self.students[1].id, by_user)
        self.assertEqual(self.chain.calls, [])

    def test_unconfirmed_registration_allowed_when_policy_disabled(self):
        service = LedgerService(self.chain, require_confirmed_registration=False)
        walk_in = make_user(self.db)

        result = service.credit_for_activity(self.db, self.admin, self.activity.id, [walk_in.id])

        self.assertEqual(len(result.entries), 1)
        self.db.refresh(walk_in)
        self.assertEqual(walk_in.token_balance, 10)

    def test_same_batch_twice_credits_once(self):
        first = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())
        second = self.service.credit_for_activity(self.db, self.admin, self.activity.id, list(reversed(self._ids())))

        self.assertEqual(len(self.chain.calls), 1)
        self.assertTrue(second.replayed)
        self.assertEqual(second.tx_hash, first.tx_hash)
        self.assertEqual(sorted(e.id for e in second.entries), sorted(e.id for e in first.entries))
        self.assertEqual(len(self._entries()), 3)
        for s in self.students:
            self.db.refresh(s)
            self.assertEqual(s.token_balance, 10)

    def test_explicit_key_replays_and_rejects_reuse_for_other_batch(self):
        self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids(), idempotency_key="req-1")
        replay = self.service.credit_for_activity(
            self.db, self.admin, self.activity.id, self._ids(), idempotency_key="req-1"
        )
        self.assertTrue(replay.replayed)

        with self.assertRaises(MintValidationError):
            self.service.credit_for_activity(
                self.db, self.admin, self.activity.id, self._ids()[:1], idempotency_key="req-1"
            )
        self.assertEqual(len(self.chain.calls), 1)

    def test_already_rewarded_account_rejected_in_new_batch(self):
        self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids()[:2])
        latecomer = make_user(self.db)
        confirm(self.db, latecomer, self.activity)

        with self.assertRaises(MintValidationError) as ctx:
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, [self.students[0].id, latecomer.id])

        self.assertEqual(ctx.exception.offenders, [{"user_id": self.students[0].id, "reasons": ["already_rewarded"]}])
        self.assertEqual(len(self.chain.calls), 1)

    def test_chain_failure_writes_nothing_and_can_be_retried(self):
        self.chain.fail_submission()

        with self.assertRaises(ChainSubmissionError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.assertEqual(self._entries(), [])
        for s in self.students:
            self.db.refresh(s)
            self.assertEqual(s.token_balance, 0)
        batch = self.db.query(MintBatch).one()
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_FAILED.value)
        self.assertFalse(activity_has_minted(self.db, self.activity.id))

        self.chain.fail_with = None
        result = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.assertEqual(len(result.entries), 3)
        batch = self.db.query(MintBatch).one()
        self.assertEqual(batch.attempts, 2)
        self.assertEqual(batch.status, MintBatchStatus.LEDGER_COMMITTED.value)
        self._assert_balances_reconcile()

    def test_ledger_write_failure_is_parked_and_reconciled_without_reminting(self):
        with mock.patch.object(LedgerService, "_apply_mint_entries", side_effect=_locked()) as apply:
            with self.assertRaises(LedgerInconsistencyError) as ctx:
                self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())
        self.assertEqual(apply.call_count, 2)

        batch = self.db.query(MintBatch).one()
        self.assertEqual(ctx.exception.batch_id, batch.id)
        self.assertEqual(batch.status, MintBatchStatus.LEDGER_WRITE_FAILED.value)
        self.assertIsNotNone(batch.tx_hash)
        self.assertEqual(self._entries(), [])
        self._assert_balances_reconcile()

        result = self.service.reconcile_batch(self.db, self.admin, batch.id)

        self.assertEqual(len(self.chain.calls), 1)
        self.assertEqual(result.tx_hash, batch.tx_hash)
        self.assertEqual(len(self._entries()), 3)
        self.db.refresh(batch)
        self.assertEqual(batch.status, MintBatchStatus.LEDGER_COMMITTED.value)
        self._assert_balances_reconcile()

    def test_retry_of_request_resumes_parked_batch(self):
        with mock.patch.object(LedgerService, "_apply_mint_entries", side_effect=_locked()):
            with self.assertRaises(LedgerInconsistencyError):
                self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        result = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.assertEqual(len(self.chain.calls), 1)
        self.assertEqual(len(result.entries), 3)
        self._assert_balances_reconcile()

    def test_transient_lock_is_retried_within_budget(self):
        real_apply = LedgerService._apply_mint_entries
        calls = {"n": 0}

        def flaky(service, db, batch_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise _locked()
            return real_apply(service, db, batch_id)

        with mock.patch.object(LedgerService, "_apply_mint_entries", autospec=True, side_effect=flaky):
            result = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.assertEqual(calls["n"], 2)
        self.assertEqual(len(result.entries), 3)
        self._assert_balances_reconcile()

    def test_timeout_leaves_batch_pending_until_reconciled(self):
        self.chain.fail_timeout(tx_hash="0x" + "cd" * 32)

        with self.assertRaises(MintPendingError) as ctx:
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())
        self.assertEqual(ctx.exception.tx_hash, "0x" + "cd" * 32)

        batch = self.db.query(MintBatch).one()
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_SUBMITTED.value)
        self.assertTrue(activity_has_minted(self.db, self.activity.id))

        with self.assertRaises(MintInProgressError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        self.chain.status = TX_PENDING
        with self.assertRaises(MintPendingError):
            self.service.reconcile_batch(self.db, self.admin, batch.id)

        self.chain.fail_with = None
        self.chain.status = "confirmed"
        result = self.service.reconcile_batch(self.db, self.admin, batch.id)

        self.assertEqual(result.tx_hash, "0x" + "cd" * 32)
        self.assertEqual(len(self._entries()), 3)
        self.assertEqual(len(self.chain.calls), 1)
        self._assert_balances_reconcile()

    def test_reverted_pending_batch_is_marked_failed(self):
        self.chain.fail_timeout()
        with self.assertRaises(MintPendingError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())
        batch = self.db.query(MintBatch).one()

        self.chain.status = TX_FAILED
        with self.assertRaises(ChainSubmissionError):
            self.service.reconcile_batch(self.db, self.admin, batch.id)

        self.db.refresh(batch)
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_FAILED.value)
        with self.assertRaises(LedgerValidationError):
            self.service.reconcile_batch(self.db, self.admin, batch.id)
        self.assertEqual(self._entries(), [])

    def test_account_in_pending_batch_cannot_join_another_batch(self):
        self.chain.fail_timeout()
        with self.assertRaises(MintPendingError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids()[:2])
        pending = self.db.query(MintBatch).one()

        self.chain.fail_with = None
        with self.assertRaises(MintValidationError) as ctx:
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, [self.students[0].id])
        self.assertEqual(ctx.exception.offenders, [{"user_id": self.students[0].id, "reasons": ["mint_in_progress"]}])
        self.assertEqual(len(self.chain.calls), 1)

        # An account outside the pending batch can still be minted.
        third = self.service.credit_for_activity(self.db, self.admin, self.activity.id, [self.students[2].id])
        self.assertEqual(len(third.entries), 1)

        self.service.reconcile_batch(self.db, self.admin, pending.id)
        for s in self.students:
            self.db.refresh(s)
            self.assertEqual(s.token_balance, 10)
        self._assert_balances_reconcile()

    def test_unexpected_chain_error_keeps_batch_recoverable(self):
        self.chain.fail_with = ConnectionError("connection reset by peer")

        with self.assertRaises(MintPendingError) as ctx:
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        batch = self.db.query(MintBatch).one()
        self.assertEqual(ctx.exception.batch_id, batch.id)
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_SUBMITTED.value)
        self.assertIsNone(batch.tx_hash)
        self.assertIn("ConnectionError", batch.error)
        self.assertEqual(self._entries(), [])

        with self.assertRaises(MintInProgressError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())

        with self.assertRaises(ChainSubmissionError):
            self.service.reconcile_batch(self.db, self.admin, batch.id)
        self.db.refresh(batch)
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_FAILED.value)

        self.chain.fail_with = None
        result = self.service.credit_for_activity(self.db, self.admin, self.activity.id, self._ids())
        self.assertEqual(result.batch_id, batch.id)
        self.assertEqual(len(result.entries), 3)
        self._assert_balances_reconcile()

    def test_submission_without_hash_stays_pending_while_fresh(self):
        batch = MintBatch(
            idempotency_key="in-flight",
            activity_id=self.activity.id,
            user_ids=self._ids(),
            amount_per_account=10,
            status=MintBatchStatus.CHAIN_SUBMITTED.value,
            attempts=1,
        )
        self.db.add(batch)
        self.db.commit()

        with self.assertRaises(MintPendingError):
            self.service.reconcile_batch(self.db, self.admin, batch.id)
        self.db.refresh(batch)
        self.assertEqual(batch.status, MintBatchStatus.CHAIN_SUBMITTED.value)

    def test_students_cannot_mint(self):
        with self.assertRaises(PermissionDeniedError):
            self.service.credit_for_activity(self.db, actor_for(self.students[0]), self.activity.id, self._ids())
        self.assertEqual(self.chain.calls, [])

    def test_unknown_activity_and_empty_list(self):
        with self.assertRaises(ActivityNotFoundError):
            self.service.credit_for_activity(self.db, self.admin, 424242, self._ids())
        with self.assertRaises(MintValidationError):
            self.service.credit_for_activity(self.db, self.admin, self.activity.id, [])

    def test_derived_key_ignores_order_and_duplicates(self):
        self.assertEqual(mint_idempotency_key(1, [3, 1, 2]), mint_idempotency_key(1, [1, 2, 3, 3]))
        self.assertNotEqual(mint_idempotency_key(1, [1, 2]), mint_idempotency_key(2, [1, 2]))


if __name__ == "__main__":
    unittest.main()
