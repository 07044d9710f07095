"""Constants and builders shared by the solver tests."""

from __future__ import annotations

from typing import Any

from eth_utils import to_checksum_address

from solver.core.types import TxReceipt

USER = to_checksum_address("0x" + "aa" * 20)
TOKEN = to_checksum_address("0x" + "bb" * 20)
TOKEN_WANTED = to_checksum_address("0x" + "cc" * 20)
CONTRACT_A = to_checksum_address("0x" + "a1" * 20)
CONTRACT_B = to_checksum_address("0x" + "b2" * 20)
SIGNER = to_checksum_address("0x" + "5e" * 20)
PRIVATE_KEY = "0x" + "11" * 32
DEPOSIT_TIMESTAMP = 1_700_000_000


def receipt(tx_hash: str, block_number: int, status: int = 1) -> TxReceipt:
    return TxReceipt(tx_hash=tx_hash, block_number=block_number, status=status, gas_used=21_000)


def fake_transaction(tx_hash: str, block_number: int, raw_tx: str = "0xf86b80"):
    """Build a side effect for a ChainWriter submit method.

    Calls ``on_signed`` like the real writer does before broadcasting, then
    returns the receipt.
    """

    async def _submit(*args: Any, on_signed=None, **kwargs: Any) -> TxReceipt:
        if on_signed is not None:
            on_signed(tx_hash, raw_tx)
        return receipt(tx_hash, block_number)

    return _submit


def word(value: int | str) -> bytes:
    """Encode an int or an address as a 32-byte storage word."""
    if isinstance(value, str):
        return bytes.fromhex(value[2:]).rjust(32, b"\x00")
    return value.to_bytes(32, "big")


# Storage slots of orders[42] with the orders mapping at slot 1:
# base = keccak(abi.encode(42, 1)); field k = keccak(abi.encode(k, base)).
ORDER_42_BASE_SLOT = "0xd9ae7388d2083c2e208c0dfdf9b10bc72bbfb00d63d88b3c7fd7c315bfc1cf40"
ORDER_42_SLOTS = [
    "0xa79a7e6468e601cb794511785511bb1ebb78886967dd6fbdae2cdce095709f0e",  # depositId
    "0xaff74b452918dfcab81f9aa4e4bd9a412b0754236f239dc7a156db19a60e24fd",  # user
    "0xe2ee5872d8fd454acb430d8b245e20d81263099e71ca41bd5e36af48780ab030",  # token
    "0x60f6d95533b8b55141fe2e7c33513f7c258f58b6944395c62dc75fea11c1539e",  # amount
]
