from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Protocol

from app.core.settings import settings
from app.services.errors import ChainEstimationError, ChainSubmissionError, ChainTimeoutError

logger = logging.getLogger(__name__)


TX_CONFIRMED = "confirmed"
TX_FAILED = "failed"
TX_PENDING = "pending"

BATCH_MINT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "address[]", "name": "recipients", "type": "address[]"},
            {"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"},
        ],
        "name": "batchMint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class TokenAuthority(Protocol):
    def batch_mint(self, addresses: list[str], amounts: list[int]) -> str: ...

    def transaction_status(self, tx_hash: str) -> str: ...


class TokenAuthorityDisabledError(ChainSubmissionError):
    pass


class DisabledTokenAuthority:
    """Used when no contract or signing key is configured."""

    def batch_mint(self, addresses: list[str], amounts: list[int]) -> str:
        raise TokenAuthorityDisabledError("Token contract is not configured")

    def transaction_status(self, tx_hash: str) -> str:
        raise TokenAuthorityDisabledError("Token contract is not configured")


def _load_abi(path: str | None) -> list[dict[str, Any]]:
    if not path:
        return BATCH_MINT_ABI
    with open(path, "r", encoding="utf-8") as fh:
        payload = json.load(fh)
    # Accept both a bare ABI list and a compiler artifact with an "abi" key.
    if isinstance(payload, dict) and isinstance(payload.get("abi"), list):
        return payload["abi"]
    if isinstance(payload, list):
        return payload
    raise ValueError(f"Unrecognized ABI file format: {path}")


class Web3TokenAuthority:
    def __init__(
        self,
        *,
        provider_url: str,
        contract_address: str,
        private_key: str,
        abi: list[dict[str, Any]] | None = None,
        decimals: int = 18,
        receipt_timeout_s: int = 120,
        request_timeout_s: float = 30.0,
    ) -> None:
        from web3 import Web3

        self._w3 = Web3(Web3.HTTPProvider(provider_url, request_kwargs={"timeout": request_timeout_s}))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=abi or BATCH_MINT_ABI,
        )
        self._account = self._w3.eth.account.from_key(private_key)
        self._decimals = max(0, int(decimals))
        self._receipt_timeout_s = max(1, int(receipt_timeout_s))

    @property
    def minter_address(self) -> str:
        return self._account.address

    def _to_base_units(self, amount: int) -> int:
        return int(amount) * (10 ** self._decimals)

    def batch_mint(self, addresses: list[str], amounts: list[int]) -> str:
        from web3 import Web3
        from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

        if len(addresses) != len(amounts) or not addresses:
            raise ChainSubmissionError("addresses and amounts must be non-empty and of equal length")

        try:
            recipients = [Web3.to_checksum_address(a) for a in addresses]
        except ValueError as exc:
            raise ChainSubmissionError(f"Invalid wallet address: {exc}") from exc

        fn = self._contract.functions.batchMint(recipients, [self._to_base_units(a) for a in amounts])
        sender = self._account.address

        try:
            gas = fn.estimate_gas({"from": sender})
        except (ContractLogicError, Web3Exception, ValueError, OSError) as exc:
            logger.warning("token_authority.estimate_gas.error recipients=%s error=%s", len(recipients), exc)
            raise ChainEstimationError(f"Gas estimation failed: {exc}") from exc

        try:
            tx = fn.build_transaction(
                {
                    "from": sender,
                    "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
                    "gas": gas,
                    "gasPrice": self._w3.eth.gas_price,
                    "chainId": self._w3.eth.chain_id,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError, OSError) as exc:
            logger.warning("token_authority.submit.error recipients=%s error=%s", len(recipients), exc)
            raise ChainSubmissionError(f"Mint submission failed: {exc}") from exc

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("token_authority.submit.sent tx_hash=%s recipients=%s gas=%s", tx_hex, len(recipients), gas)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_s)
        except TimeExhausted as exc:
            raise ChainTimeoutError(f"No receipt after {self._receipt_timeout_s}s", tx_hash=tx_hex) from exc
        except (Web3Exception, ValueError, OSError) as exc:
            # Already broadcast; the hash is the only handle left for reconciliation.
            logger.warning("token_authority.receipt.error tx_hash=%s error=%s", tx_hex, exc)
            raise ChainTimeoutError(f"Receipt lookup failed: {exc}", tx_hash=tx_hex) from exc

        if int(receipt.get("status", 0)) != 1:
            raise ChainSubmissionError(f"Mint transaction {tx_hex} reverted")
        return tx_hex

    def transaction_status(self, tx_hash: str) -> str:
        from web3.exceptions import TransactionNotFound

        try:
            receipt = self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return TX_PENDING
        return TX_CONFIRMED if int(receipt.get("status", 0)) == 1 else TX_FAILED


@lru_cache(maxsize=1)
def get_token_authority() -> TokenAuthority:
    if not settings.chain_configured:
        logger.warning("token_authority.disabled contract=%s", bool(settings.token_contract_address))
        return DisabledTokenAuthority()
    return Web3TokenAuthority(
        provider_url=settings.bsc_provider_url,
        contract_address=settings.token_contract_address or "",
        private_key=settings.admin_private_key or "",
        abi=_load_abi(settings.token_contract_abi_path),
        decimals=settings.token_decimals,
        receipt_timeout_s=settings.chain_receipt_timeout_s,
    )
