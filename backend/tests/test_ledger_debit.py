import os
import tempfile
import threading
import unittest
from unittest import mock

from _support import (
    FakeTokenAuthority,
    actor_for,
    make_file_session_factory,
    make_reward,
    make_session_factory,
    make_user,
)
from app.models.ledger_entry import EntryType, LedgerEntry
from app.models.reward import Reward
from app.services.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    LedgerValidationError,
    OutOfStockError,
    PermissionDeniedError,
    RewardNotFoundError,
    RewardUnavailableError,
)
from app.services.ledger import LedgerService, ledger_sum


class DebitForPurchaseTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()
        self.service = LedgerService(FakeTokenAuthority(), max_retries=3)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _purchases(self, user_id):
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id, LedgerEntry.type == EntryType.REWARD_PURCHASE.value)
            .all()
        )

    def test_purchase_with_unlimited_stock(self):
        student = make_user(self.db, balance=100)
        reward = make_reward(self.db, cost=80, quantity=None)

        result = self.service.debit_for_purchase(self.db, actor_for(student), reward.id)

        self.assertEqual(result.new_balance, 20)
        self.assertEqual(result.entry.amount, -80)
        self.assertEqual(result.entry.type, EntryType.REWARD_PURCHASE.value)
        self.assertEqual(result.entry.reward_id, reward.id)
        self.assertIsNone(result.entry.tx_hash)
        self.db.refresh(student)
        self.db.refresh(reward)
        self.assertEqual(student.token_balance, 20)
        self.assertEqual(ledger_sum(self.db, student.id), 20)
        self.assertIsNone(reward.quantity)
        self.assertEqual(len(self._purchases(student.id)), 1)

    def test_insufficient_balance_changes_nothing(self):
        student = make_user(self.db, balance=50)
        reward = make_reward(self.db, cost=80, quantity=5)

        with self.assertRaises(InsufficientBalanceError) as ctx:
            self.service.debit_for_purchase(self.db, actor_for(student), reward.id)

        self.assertEqual((ctx.exception.balance, ctx.exception.cost), (50, 80))
        self.db.refresh(student)
        self.db.refresh(reward)
        self.assertEqual(student.token_balance, 50)
        self.assertEqual(reward.quantity, 5)
        self.assertEqual(self._purchases(student.id), [])

    def test_last_unit_sold_once_even_with_stale_reader(self):
        first = make_user(self.db, balance=100)
        second = make_user(self.db, balance=100)
        reward = make_reward(self.db, cost=30, quantity=1)

        other = self.Session()
        try:
            # The second buyer's session has already seen quantity == 1.
            stale = other.query(Reward).filter(Reward.id == reward.id).one()
            self.assertEqual(stale.quantity, 1)

            self.service.debit_for_purchase(self.db, actor_for(first), reward.id)

            with self.assertRaises(OutOfStockError):
                self.service.debit_for_purchase(other, actor_for(second), reward.id)
        finally:
            other.close()

        self.db.refresh(reward)
        self.db.refresh(second)
        self.assertEqual(reward.quantity, 0)
        self.assertEqual(second.token_balance, 100)
        self.assertEqual(len(self._purchases(first.id)), 1)
        self.assertEqual(self._purchases(second.id), [])

    def test_parallel_buyers_race_for_last_unit(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        engine, Session = make_file_session_factory(os.path.join(tmp.name, "race.db"))
        self.addCleanup(engine.dispose)
        service = LedgerService(FakeTokenAuthority(), max_retries=20)

        setup = Session()
        try:
            buyers = [actor_for(make_user(setup, balance=100)) for _ in range(6)]
            reward_id = make_reward(setup, cost=30, quantity=1).id
        finally:
            setup.close()

        start = threading.Barrier(len(buyers))
        outcomes: dict[int, str] = {}

        def buy(actor):
            db = Session()
            try:
                start.wait()
                service.debit_for_purchase(db, actor, reward_id)
                outcomes[actor.id] = "ok"
            except Exception as exc:
                outcomes[actor.id] = type(exc).__name__
            finally:
                db.close()

        threads = [threading.Thread(target=buy, args=(actor,)) for actor in buyers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(len(outcomes), len(buyers))
        self.assertEqual(sorted(outcomes.values()), ["OutOfStockError"] * (len(buyers) - 1) + ["ok"])

        check = Session()
        try:
            self.assertEqual(check.query(Reward.quantity).filter(Reward.id == reward_id).scalar(), 0)
            self.assertEqual(
                check.query(LedgerEntry).filter(LedgerEntry.type == EntryType.REWARD_PURCHASE.value).count(), 1
            )
            self.assertEqual(service.audit_balances(check), [])
        finally:
            check.close()

    def test_unavailable_and_missing_rewards(self):
        student = make_user(self.db, balance=100)
        hidden = make_reward(self.db, cost=10, status="unavailable")

        with self.assertRaises(RewardUnavailableError):
            self.service.debit_for_purchase(self.db, actor_for(student), hidden.id)
        with self.assertRaises(RewardNotFoundError):
            self.service.debit_for_purchase(self.db, actor_for(student), 31337)

        self.db.refresh(student)
        self.assertEqual(student.token_balance, 100)

    def test_conflicts_retried_then_surfaced(self):
        student = make_user(self.db, balance=100)
        reward = make_reward(self.db, cost=10)

        with mock.patch.object(
            LedgerService, "_purchase_once", side_effect=ConcurrencyConflictError("balance moved")
        ) as attempt:
            with self.assertRaises(ConcurrencyConflictError):
                self.service.debit_for_purchase(self.db, actor_for(student), reward.id)

        self.assertEqual(attempt.call_count, 3)
        self.db.refresh(student)
        self.assertEqual(student.token_balance, 100)

    def test_single_conflict_recovers(self):
        student = make_user(self.db, balance=100)
        reward = make_reward(self.db, cost=10, quantity=2)
        real_once = LedgerService._purchase_once
        calls = {"n": 0}

        def flaky(service, db, user_id, reward_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConcurrencyConflictError("stock moved")
            return real_once(service, db, user_id, reward_id)

        with mock.patch.object(LedgerService, "_purchase_once", autospec=True, side_effect=flaky):
            result = self.service.debit_for_purchase(self.db, actor_for(student), reward.id)

        self.assertEqual(result.new_balance, 90)
        self.db.refresh(reward)
        self.assertEqual(reward.quantity, 1)

    def test_restock_goes_through_ledger_service(self):
        admin = actor_for(make_user(self.db, role="admin", wallet=False))
        student = make_user(self.db, balance=100)
        reward = make_reward(self.db, cost=10, quantity=0)

        with self.assertRaises(OutOfStockError):
            self.service.debit_for_purchase(self.db, actor_for(student), reward.id)
        with self.assertRaises(PermissionDeniedError):
            self.service.set_reward_stock(self.db, actor_for(student), reward.id, 5)
        with self.assertRaises(LedgerValidationError):
            self.service.set_reward_stock(self.db, admin, reward.id, -1)

        restocked = self.service.set_reward_stock(self.db, admin, reward.id, 2)
        self.assertEqual(restocked.quantity, 2)

        result = self.service.debit_for_purchase(self.db, actor_for(student), reward.id)
        self.assertEqual(result.new_balance, 90)
        self.assertEqual(self.service.audit_balances(self.db), [])


if __name__ == "__main__":
    unittest.main()
