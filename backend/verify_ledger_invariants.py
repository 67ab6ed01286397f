from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.core.security import CurrentUser
from app.models.activity import Activity
from app.models.ledger_entry import LedgerEntry
from app.models.mint_batch import MintBatch
from app.models.registration import Registration
from app.models.reward import Reward
from app.models.user import User
from app.services.errors import InsufficientBalanceError, OutOfStockError
from app.services.ledger import LedgerService, ledger_sum
from app.services.token_authority import TX_CONFIRMED


class _StubAuthority:
    def __init__(self) -> None:
        self.minted: list[tuple[list[str], list[int]]] = []

    def batch_mint(self, addresses: list[str], amounts: list[int]) -> str:
        self.minted.append((list(addresses), list(amounts)))
        return "0x" + f"{len(self.minted):064x}"

    def transaction_status(self, tx_hash: str) -> str:
        return TX_CONFIRMED


def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        admin_row = User(
            name="Admin", surname="Admin", student_id="A1", email="admin@uni.test",
            password="x.y", role="admin", status="active", token_balance=0,
        )
        db.add(admin_row)
        students = [
            User(
                name=f"S{i}", surname="T", student_id=f"S{i}", email=f"s{i}@uni.test", password="x.y",
                role="student", status="active", token_balance=0, wallet_address="0x" + f"{i:040x}",
            )
            for i in range(1, 4)
        ]
        db.add_all(students)
        db.commit()
        admin = CurrentUser(id=admin_row.id, email=admin_row.email, role="admin")

        activity = Activity(
            title="Open day", description="Help visitors", tokens=50,
            date=datetime(2026, 10, 1, tzinfo=timezone.utc), location="Library", status="open",
            created_by=admin.id,
        )
        db.add(activity)
        db.commit()
        for s in students:
            db.add(Registration(user_id=s.id, activity_id=activity.id, status="confirmed"))
        db.commit()

        chain = _StubAuthority()
        service = LedgerService(chain, require_confirmed_registration=True)
        ids = [s.id for s in students]

        first = service.credit_for_activity(db, admin, activity.id, ids)
        assert len(first.entries) == 3, first.entries
        again = service.credit_for_activity(db, admin, activity.id, list(reversed(ids)))
        assert again.replayed and len(chain.minted) == 1, chain.minted
        for s in students:
            db.refresh(s)
            assert s.token_balance == 50 == ledger_sum(db, s.id), s.token_balance

        hoodie = Reward(title="Hoodie", description="University hoodie", token_cost=40, quantity=1, status="available")
        db.add(hoodie)
        db.commit()

        buyer = CurrentUser(id=students[0].id, email=students[0].email, role="student")
        paid = service.debit_for_purchase(db, buyer, hoodie.id)
        assert paid.new_balance == 10, paid.new_balance

        other = CurrentUser(id=students[1].id, email=students[1].email, role="student")
        try:
            service.debit_for_purchase(db, other, hoodie.id)
        except OutOfStockError:
            pass
        else:
            raise AssertionError("last unit sold twice")

        service.set_reward_stock(db, admin, hoodie.id, 1)
        try:
            service.debit_for_purchase(db, buyer, hoodie.id)
        except InsufficientBalanceError as exc:
            assert (exc.balance, exc.cost) == (10, 40), (exc.balance, exc.cost)
        else:
            raise AssertionError("balance went negative")

        assert service.audit_balances(db) == [], service.audit_balances(db)
        assert db.query(MintBatch).count() == 1
        assert db.query(LedgerEntry).filter(LedgerEntry.amount < 0).count() == 1
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
