"""Shared fixtures for the solver test suite."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from solver.attestation.client import AttestationClient
from solver.attestation.models import ProofResult
from solver.chain.reader import ChainReader
from solver.chain.writer import ChainWriter
from solver.core.config import Settings
from solver.core.types import Deposit, FulfillmentOrder
from solver.pipeline.checkpoint import CheckpointStore
from solver.pipeline.orchestrator import FulfillmentOrchestrator
from solver.tests.helpers import (
    CONTRACT_A,
    CONTRACT_B,
    DEPOSIT_TIMESTAMP,
    PRIVATE_KEY,
    TOKEN,
    TOKEN_WANTED,
    USER,
    fake_transaction,
    receipt,
)


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Return settings for tests, isolated from the environment's .env."""
    return Settings(
        _env_file=None,
        herodotus_api_key="test-api-key",
        chain_a_rpc_url="http://chain-a.test",
        chain_b_rpc_url="http://chain-b.test",
        multi_token_deposit_address_a=CONTRACT_A,
        multi_token_deposit_address_b=CONTRACT_B,
        private_key=PRIVATE_KEY,
        herodotus_api_url="https://attestation.test",
        attestation_poll_interval=0.01,
        attestation_max_wait=2.0,
        checkpoint_dir=tmp_path / "checkpoints",
    )


# ── Chain records ────────────────────────────────────────────────────────────


@pytest.fixture
def sample_deposit() -> Deposit:
    """Deposit #41: 1000 of TOKEN from USER, wanting TOKEN_WANTED on chain B."""
    return Deposit(
        deposit_id=41,
        user=USER,
        token=TOKEN,
        token_wanted=TOKEN_WANTED,
        amount=1000,
        timestamp=DEPOSIT_TIMESTAMP,
    )


# ── Component mocks ──────────────────────────────────────────────────────────


@pytest.fixture
def reader_a(sample_deposit: Deposit) -> MagicMock:
    reader = MagicMock(spec=ChainReader)
    reader.get_last_deposit = AsyncMock(return_value=sample_deposit)
    reader.get_deposit = AsyncMock(return_value=sample_deposit)
    return reader


@pytest.fixture
def reader_b(sample_deposit: Deposit) -> MagicMock:
    reader = MagicMock(spec=ChainReader)
    reader.read_order = AsyncMock(return_value=FulfillmentOrder.from_deposit(sample_deposit))
    return reader


@pytest.fixture
def writer_a() -> MagicMock:
    writer = MagicMock(spec=ChainWriter)
    writer.claim_with_proof = AsyncMock(side_effect=fake_transaction("0xclaim", 300))
    writer.resume_transaction = AsyncMock(return_value=receipt("0xclaim", 300))
    return writer


@pytest.fixture
def writer_b() -> MagicMock:
    writer = MagicMock(spec=ChainWriter)
    writer.create_fulfillment_order = AsyncMock(side_effect=fake_transaction("0xorder", 120))
    writer.resume_transaction = AsyncMock(return_value=receipt("0xorder", 120))
    return writer


@pytest.fixture
def attestation() -> MagicMock:
    client = MagicMock(spec=AttestationClient)
    client.submit_batch_query = AsyncMock(return_value="query-1")
    client.await_completion = AsyncMock(
        return_value=ProofResult(query_id="query-1", result={"proof": "P"}, polls=3)
    )
    client.close = AsyncMock()
    return client


@pytest.fixture
def checkpoint_store(settings: Settings) -> CheckpointStore:
    return CheckpointStore(settings.checkpoint_dir)


@pytest.fixture
def orchestrator(
    settings: Settings,
    reader_a: MagicMock,
    writer_a: MagicMock,
    reader_b: MagicMock,
    writer_b: MagicMock,
    attestation: MagicMock,
    checkpoint_store: CheckpointStore,
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(
        settings,
        reader_a=reader_a,
        writer_a=writer_a,
        reader_b=reader_b,
        writer_b=writer_b,
        attestation=attestation,
        checkpoints=checkpoint_store,
    )
