"""Read-only access to deposit records and raw contract storage."""

from __future__ import annotations

import logging
from typing import Any, Union

from eth_utils import to_checksum_address
from pydantic import ValidationError
from web3 import AsyncHTTPProvider, AsyncWeb3

from solver.chain.abi import MULTI_TOKEN_DEPOSIT_ABI
from solver.core.errors import ChainReadError, NoDepositFound
from solver.core.types import Deposit, FulfillmentOrder, OrderField, StorageSlotMap

logger = logging.getLogger(__name__)

BlockReference = Union[int, str]

DEFAULT_REQUEST_TIMEOUT = 30.0


def word_to_int(word: bytes) -> int:
    return int.from_bytes(word, "big")


def word_to_address(word: bytes) -> str:
    return to_checksum_address(word[-20:])


def build_async_web3(rpc_url: str, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> AsyncWeb3:
    """Create an AsyncWeb3 instance over HTTP for ``rpc_url``."""
    return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))


class ChainReader:
    """Read deposits and storage words from one chain endpoint."""

    def __init__(self, w3: AsyncWeb3, chain: str = "") -> None:
        self._w3 = w3
        self.chain = chain

    @classmethod
    def from_url(cls, rpc_url: str, chain: str = "", request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> "ChainReader":
        return cls(build_async_web3(rpc_url, request_timeout), chain=chain)

    @property
    def web3(self) -> AsyncWeb3:
        return self._w3

    def _contract(self, contract_address: str) -> Any:
        return self._w3.eth.contract(
            address=to_checksum_address(contract_address),
            abi=MULTI_TOKEN_DEPOSIT_ABI,
        )

    async def get_deposit_nonce(self, contract_address: str) -> int:
        try:
            nonce = await self._contract(contract_address).functions.depositNonce().call()
        except Exception as exc:
            raise ChainReadError(
                f"depositNonce() failed on chain {self.chain}: {exc}",
                context={"chain": self.chain, "contract": contract_address},
            ) from exc
        return int(nonce)

    async def get_deposit(self, contract_address: str, deposit_id: int) -> Deposit:
        """Read ``deposits(deposit_id)`` and decode it into a ``Deposit``."""
        ctx = {"chain": self.chain, "contract": contract_address, "deposit_id": deposit_id}
        try:
            raw = await self._contract(contract_address).functions.deposits(deposit_id).call()
        except Exception as exc:
            raise ChainReadError(f"deposits({deposit_id}) failed: {exc}", context=ctx) from exc

        try:
            deposit_id_, user, token, token_wanted, amount, timestamp = raw
            return Deposit(
                deposit_id=int(deposit_id_),
                user=to_checksum_address(user),
                token=to_checksum_address(token),
                token_wanted=to_checksum_address(token_wanted),
                amount=int(amount),
                timestamp=int(timestamp),
            )
        except (TypeError, ValueError, ValidationError) as exc:
            raise ChainReadError(f"could not decode deposit record {raw!r}: {exc}", context=ctx) from exc

    async def get_last_deposit(self, contract_address: str) -> Deposit:
        """Return the most recent deposit, i.e. the one at ``depositNonce() - 1``.

        Raises:
            NoDepositFound: the nonce is zero, so no deposit exists yet.
        """
        nonce = await self.get_deposit_nonce(contract_address)
        if nonce <= 0:
            raise NoDepositFound(
                f"no deposits on chain {self.chain} contract {contract_address}",
                context={"chain": self.chain, "contract": contract_address, "nonce": nonce},
            )
        deposit = await self.get_deposit(contract_address, nonce - 1)
        logger.info(
            "Last deposit on chain %s is #%d", self.chain, deposit.deposit_id,
            extra={"chain": self.chain, "deposit_id": deposit.deposit_id},
        )
        return deposit

    async def get_storage_value(
        self,
        address: str,
        slot: str | bytes | int,
        block_reference: BlockReference = "latest",
    ) -> bytes:
        """Read one raw 32-byte storage word."""
        if isinstance(slot, str):
            position = int(slot, 16)
        elif isinstance(slot, bytes):
            position = int.from_bytes(slot, "big")
        else:
            position = slot
        try:
            value = await self._w3.eth.get_storage_at(
                to_checksum_address(address), position, block_identifier=block_reference
            )
        except Exception as exc:
            raise ChainReadError(
                f"storage read failed at {address} slot {hex(position)}: {exc}",
                context={"chain": self.chain, "contract": address, "block_number": block_reference},
            ) from exc
        return bytes(value).rjust(32, b"\x00")

    async def read_order(
        self,
        address: str,
        slots: StorageSlotMap,
        block_reference: BlockReference = "latest",
    ) -> FulfillmentOrder:
        """Read the four order slots and decode them into a ``FulfillmentOrder``."""
        words: dict[OrderField, bytes] = {}
        for field, slot in slots.items():
            words[field] = await self.get_storage_value(address, slot, block_reference)
        return FulfillmentOrder(
            deposit_id=word_to_int(words[OrderField.DEPOSIT_ID]),
            user=word_to_address(words[OrderField.USER]),
            token=word_to_address(words[OrderField.TOKEN]),
            amount=word_to_int(words[OrderField.AMOUNT]),
        )
