"""Signed transaction submission with per-signer nonce serialisation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address, to_hex
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import Web3RPCError

from solver.chain.abi import MULTI_TOKEN_DEPOSIT_ABI
from solver.chain.reader import DEFAULT_REQUEST_TIMEOUT, build_async_web3
from solver.core.errors import TransactionError
from solver.core.types import TxReceipt

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 180.0

SignedHook = Callable[[str, str], None]
QueueKey = tuple[str, int, str]


def endpoint_of(w3: AsyncWeb3) -> str:
    """Identify the node a web3 instance talks to."""
    uri = getattr(w3.provider, "endpoint_uri", None)
    return str(uri) if uri else f"web3@{id(w3):x}"


class TransactionQueue:
    """Serialise submissions per ``(endpoint, chain id, signer)`` and hand out nonces.

    The lock is held from nonce assignment until the signed transaction has
    been broadcast, so concurrent runs sharing a signer never reuse a nonce.
    Two chains reporting the same chain id (local devnets) still get separate
    counters because they sit behind different endpoints.
    Waiting for inclusion happens outside the lock.
    """

    def __init__(self) -> None:
        self._locks: dict[QueueKey, asyncio.Lock] = {}
        self._next_nonce: dict[QueueKey, int] = {}

    def lock_for(self, key: QueueKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    @asynccontextmanager
    async def reserve(self, w3: AsyncWeb3, chain_id: int, address: str) -> AsyncIterator[int]:
        key = (endpoint_of(w3), chain_id, address)
        async with self.lock_for(key):
            nonce = self._next_nonce.get(key)
            if nonce is None:
                nonce = await w3.eth.get_transaction_count(address, "pending")
            try:
                yield nonce
            except BaseException:
                # Unknown whether the nonce was consumed; resync from chain next time.
                self._next_nonce.pop(key, None)
                raise
            self._next_nonce[key] = nonce + 1


class ChainWriter:
    """Sign, submit and confirm MultiTokenDeposit transactions on one chain."""

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        chain: str = "",
        *,
        queue: TransactionQueue | None = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        chain_id: int | None = None,
    ) -> None:
        self._w3 = w3
        self._account = account
        self.chain = chain
        self._queue = queue or TransactionQueue()
        self._receipt_timeout = receipt_timeout
        self._chain_id = chain_id

    @classmethod
    def from_url(
        cls,
        rpc_url: str,
        private_key: str,
        chain: str = "",
        *,
        queue: TransactionQueue | None = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> "ChainWriter":
        account: LocalAccount = Account.from_key(private_key)
        return cls(
            build_async_web3(rpc_url, request_timeout),
            account,
            chain,
            queue=queue,
            receipt_timeout=receipt_timeout,
        )

    @property
    def address(self) -> str:
        return self._account.address

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._w3.eth.chain_id)
        return self._chain_id

    def _contract(self, contract_address: str) -> Any:
        return self._w3.eth.contract(
            address=to_checksum_address(contract_address),
            abi=MULTI_TOKEN_DEPOSIT_ABI,
        )

    # ── Contract operations ──────────────────────────────────────────────

    async def create_fulfillment_order(
        self,
        contract_address: str,
        deposit_id: int,
        amount: int,
        token: str,
        user: str,
        *,
        on_signed: SignedHook | None = None,
    ) -> TxReceipt:
        """Submit ``createFulfillmentOrder`` and wait for one confirmation.

        The receipt's block number is the block at which the order's storage
        was written; the attestation query must be scoped to exactly it.
        """
        fn = self._contract(contract_address).functions.createFulfillmentOrder(
            deposit_id, amount, to_checksum_address(token), to_checksum_address(user)
        )
        return await self._transact(
            "create_order",
            fn,
            on_signed=on_signed,
            context={"deposit_id": deposit_id, "contract": contract_address},
        )

    async def claim_with_proof(
        self,
        contract_address: str,
        deposit_id: int,
        amount: int,
        block_number: int,
        order_id: int,
        *,
        on_signed: SignedHook | None = None,
    ) -> TxReceipt:
        """Submit ``claimWithProof`` and wait for inclusion."""
        fn = self._contract(contract_address).functions.claimWithProof(
            deposit_id, amount, block_number, order_id
        )
        return await self._transact(
            "claim",
            fn,
            on_signed=on_signed,
            context={
                "deposit_id": deposit_id,
                "order_id": order_id,
                "block_number": block_number,
                "contract": contract_address,
            },
        )

    # ── Submission primitives ────────────────────────────────────────────

    async def _transact(
        self,
        step: str,
        fn: Any,
        *,
        on_signed: SignedHook | None,
        context: dict[str, Any],
    ) -> TxReceipt:
        ctx = {"chain": self.chain, **context}
        chain_id = await self.chain_id()

        async with self._queue.reserve(self._w3, chain_id, self.address) as nonce:
            try:
                tx = await fn.build_transaction(
                    {"from": self.address, "nonce": nonce, "chainId": chain_id}
                )
                signed = self._account.sign_transaction(tx)
            except Exception as exc:
                raise TransactionError(
                    f"{step} transaction could not be built on chain {self.chain}: {exc}",
                    step=step,
                    rejected=True,
                    context={**ctx, "nonce": nonce},
                ) from exc

            tx_hash = to_hex(signed.hash)
            raw_tx = to_hex(signed.raw_transaction)
            # Must be durable before broadcast; a failing hook aborts the send.
            if on_signed is not None:
                on_signed(tx_hash, raw_tx)
            await self._broadcast(step, tx_hash, signed.raw_transaction, {**ctx, "nonce": nonce})

        logger.info(
            "Submitted %s transaction %s (nonce %d)", step, tx_hash, nonce,
            extra={"step": step, "tx_hash": tx_hash, "chain": self.chain},
        )
        return await self.wait_for_receipt(tx_hash, step=step, context=ctx)

    async def _broadcast(self, step: str, tx_hash: str, raw_tx: bytes, ctx: dict[str, Any]) -> None:
        try:
            await self._w3.eth.send_raw_transaction(raw_tx)
        except Exception as exc:
            raise TransactionError(
                f"{step} transaction rejected on chain {self.chain}: {exc}",
                tx_hash=tx_hash,
                step=step,
                rejected=isinstance(exc, Web3RPCError),
                context=ctx,
            ) from exc

    async def resume_transaction(
        self,
        tx_hash: str,
        raw_transaction: str | None,
        *,
        step: str = "",
        context: dict[str, Any] | None = None,
    ) -> TxReceipt:
        """Re-broadcast a previously signed transaction and wait for it.

        The nonce is baked into the signed payload, so sending it again can
        only ever land the same transaction. "already known" and "nonce too
        low" replies are expected when the first broadcast went through.
        """
        if raw_transaction:
            try:
                await self._w3.eth.send_raw_transaction(HexBytes(raw_transaction))
            except Exception as exc:
                logger.warning(
                    "Re-broadcast of %s returned %s; waiting on the original", tx_hash, exc,
                    extra={"step": step, "tx_hash": tx_hash, "chain": self.chain},
                )
        return await self.wait_for_receipt(tx_hash, step=step, context=context)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        step: str = "",
        context: dict[str, Any] | None = None,
    ) -> TxReceipt:
        """Wait for ``tx_hash`` to be mined; a reverted receipt is an error."""
        ctx = {"chain": self.chain, **(context or {})}
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except Exception as exc:
            raise TransactionError(
                f"no receipt for {tx_hash} on chain {self.chain}: {exc}",
                tx_hash=tx_hash,
                step=step or None,
                context=ctx,
            ) from exc

        block_number = int(receipt["blockNumber"])
        status = int(receipt["status"])
        if status != 1:
            raise TransactionError(
                f"{step or 'transaction'} reverted in block {block_number}",
                tx_hash=tx_hash,
                receipt=receipt,
                step=step or None,
                context={**ctx, "block_number": block_number},
            )

        logger.info(
            "Transaction %s confirmed in block %d", tx_hash, block_number,
            extra={"step": step, "tx_hash": tx_hash, "block_number": block_number, "chain": self.chain},
        )
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=block_number,
            status=status,
            gas_used=receipt.get("gasUsed"),
        )
