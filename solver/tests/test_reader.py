"""Tests for solver.chain.reader: deposit reads and raw storage reads."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from solver.chain.reader import ChainReader, word_to_address, word_to_int
from solver.chain.slots import StorageSlotDeriver
from solver.core.errors import ChainReadError, ErrorCode, NoDepositFound
from solver.tests.helpers import CONTRACT_A, CONTRACT_B, TOKEN, TOKEN_WANTED, USER, word


def _web3(nonce: int = 42, record: tuple | None = None) -> MagicMock:
    w3 = MagicMock()
    contract = MagicMock()
    contract.functions.depositNonce.return_value.call = AsyncMock(return_value=nonce)
    contract.functions.deposits.return_value.call = AsyncMock(
        return_value=record or (41, USER.lower(), TOKEN.lower(), TOKEN_WANTED.lower(), 1000, 1_700_000_000)
    )
    w3.eth.contract.return_value = contract
    w3.eth.get_storage_at = AsyncMock(return_value=b"\x00" * 32)
    return w3


class TestWords:
    def test_word_to_int(self):
        assert word_to_int(word(1000)) == 1000
        assert word_to_int(b"\x00" * 32) == 0

    def test_word_to_address_checksums(self):
        assert word_to_address(word(USER.lower())) == USER


class TestDeposits:
    @pytest.mark.asyncio
    async def test_deposit_nonce(self):
        reader = ChainReader(_web3(nonce=7), chain="A")
        assert await reader.get_deposit_nonce(CONTRACT_A) == 7

    @pytest.mark.asyncio
    async def test_last_deposit_reads_nonce_minus_one(self):
        w3 = _web3(nonce=42)
        reader = ChainReader(w3, chain="A")

        deposit = await reader.get_last_deposit(CONTRACT_A)

        w3.eth.contract.return_value.functions.deposits.assert_called_once_with(41)
        assert deposit.deposit_id == 41
        assert deposit.user == USER
        assert deposit.token == TOKEN
        assert deposit.token_wanted == TOKEN_WANTED
        assert deposit.amount == 1000
        assert deposit.order_id == 42

    @pytest.mark.asyncio
    async def test_zero_nonce_is_no_deposit(self):
        w3 = _web3(nonce=0)
        reader = ChainReader(w3, chain="A")

        with pytest.raises(NoDepositFound) as exc_info:
            await reader.get_last_deposit(CONTRACT_A)

        assert exc_info.value.code is ErrorCode.NO_DEPOSIT_FOUND
        assert isinstance(exc_info.value, ChainReadError)
        w3.eth.contract.return_value.functions.deposits.assert_not_called()

    @pytest.mark.asyncio
    async def test_rpc_failure_is_chain_read_error(self):
        w3 = _web3()
        w3.eth.contract.return_value.functions.depositNonce.return_value.call = AsyncMock(
            side_effect=ConnectionError("connection refused")
        )
        reader = ChainReader(w3, chain="A")

        with pytest.raises(ChainReadError, match="connection refused") as exc_info:
            await reader.get_last_deposit(CONTRACT_A)
        assert exc_info.value.context["chain"] == "A"
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_malformed_record(self):
        reader = ChainReader(_web3(record=(41, "not-an-address")), chain="A")
        with pytest.raises(ChainReadError, match="could not decode"):
            await reader.get_deposit(CONTRACT_A, 41)


class TestStorage:
    @pytest.mark.asyncio
    async def test_storage_read_at_block(self):
        w3 = _web3()
        w3.eth.get_storage_at = AsyncMock(return_value=word(42))
        reader = ChainReader(w3, chain="B")

        value = await reader.get_storage_value(CONTRACT_B, "0x" + "00" * 31 + "05", 120)

        assert word_to_int(value) == 42
        w3.eth.get_storage_at.assert_awaited_once_with(CONTRACT_B, 5, block_identifier=120)

    @pytest.mark.asyncio
    async def test_short_word_is_left_padded(self):
        w3 = _web3()
        w3.eth.get_storage_at = AsyncMock(return_value=b"\x01")
        reader = ChainReader(w3, chain="B")
        value = await reader.get_storage_value(CONTRACT_B, 0)
        assert value == word(1)

    @pytest.mark.asyncio
    async def test_storage_failure(self):
        w3 = _web3()
        w3.eth.get_storage_at = AsyncMock(side_effect=TimeoutError("slow node"))
        reader = ChainReader(w3, chain="B")
        with pytest.raises(ChainReadError, match="storage read failed"):
            await reader.get_storage_value(CONTRACT_B, b"\x00" * 32, 120)

    @pytest.mark.asyncio
    async def test_read_order_decodes_four_words(self):
        slots = StorageSlotDeriver().derive(42)
        values = {
            int(slots.deposit_id, 16): word(41),
            int(slots.user, 16): word(USER),
            int(slots.token, 16): word(TOKEN_WANTED),
            int(slots.amount, 16): word(1000),
        }
        w3 = _web3()
        w3.eth.get_storage_at = AsyncMock(side_effect=lambda addr, pos, block_identifier: values[pos])
        reader = ChainReader(w3, chain="B")

        order = await reader.read_order(CONTRACT_B, slots, 120)

        assert order.deposit_id == 41
        assert order.user == USER
        assert order.token == TOKEN_WANTED
        assert order.amount == 1000
        assert w3.eth.get_storage_at.await_count == 4
