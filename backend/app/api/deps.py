from functools import lru_cache

from app.services.ledger import LedgerService


@lru_cache(maxsize=1)
def get_ledger_service() -> LedgerService:
    return LedgerService()
