"""Tests for solver.pipeline.checkpoint."""

from __future__ import annotations

import os

import pytest

from solver.core.errors import CheckpointError
from solver.core.types import Deposit, RunCheckpoint, RunFailure, RunState
from solver.pipeline.checkpoint import CheckpointStore
from solver.tests.helpers import CONTRACT_B


def _checkpoint(deposit: Deposit | None, state: RunState = RunState.ORDER_CREATED) -> RunCheckpoint:
    return RunCheckpoint(
        run_id="run-1",
        contract_b=CONTRACT_B,
        deposit=deposit,
        state=state,
        order_tx_hash="0xorder",
        block_number=120,
        order_id=42,
    )


class TestCheckpointStore:
    def test_missing_returns_none(self, checkpoint_store: CheckpointStore):
        assert checkpoint_store.load(CONTRACT_B, 41) is None

    def test_save_and_load(self, checkpoint_store: CheckpointStore, sample_deposit: Deposit):
        cp = _checkpoint(sample_deposit)
        cp.failure = RunFailure(code="ATTESTATION_TIMEOUT", message="slow", resumable=True)

        path = checkpoint_store.save(cp)
        loaded = checkpoint_store.load(CONTRACT_B, 41)

        assert path == checkpoint_store.root / CONTRACT_B.lower() / "41.json"
        assert loaded is not None
        assert loaded.state is RunState.ORDER_CREATED
        assert loaded.deposit == sample_deposit
        assert loaded.block_number == 120
        assert loaded.failure.resumable is True
        assert loaded.deposit_id == 41

    def test_key_is_case_insensitive(self, checkpoint_store: CheckpointStore, sample_deposit: Deposit):
        checkpoint_store.save(_checkpoint(sample_deposit))
        assert checkpoint_store.load(CONTRACT_B.upper().replace("0X", "0x"), 41) is not None

    def test_overwrite_leaves_no_temp_files(self, checkpoint_store: CheckpointStore, sample_deposit: Deposit):
        cp = _checkpoint(sample_deposit)
        checkpoint_store.save(cp)
        cp.state = RunState.QUERY_SUBMITTED
        cp.query_id = "query-1"
        path = checkpoint_store.save(cp)

        assert [p.name for p in path.parent.iterdir()] == ["41.json"]
        assert checkpoint_store.load(CONTRACT_B, 41).query_id == "query-1"

    def test_save_requires_deposit(self, checkpoint_store: CheckpointStore):
        with pytest.raises(CheckpointError):
            checkpoint_store.save(_checkpoint(None))

    def test_corrupt_file(self, checkpoint_store: CheckpointStore):
        path = checkpoint_store.path_for(CONTRACT_B, 41)
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(CheckpointError, match="unreadable checkpoint"):
            checkpoint_store.load(CONTRACT_B, 41)

    def test_list_skips_unreadable(self, checkpoint_store: CheckpointStore, sample_deposit: Deposit):
        checkpoint_store.save(_checkpoint(sample_deposit))
        checkpoint_store.save(_checkpoint(sample_deposit.model_copy(update={"deposit_id": 7})))
        checkpoint_store.path_for(CONTRACT_B, 99).write_text("garbage")

        listed = checkpoint_store.list()

        assert sorted(cp.deposit_id for cp in listed) == [7, 41]
        assert len(checkpoint_store.list(CONTRACT_B)) == 2

    def test_list_empty_root(self, tmp_path):
        assert CheckpointStore(tmp_path / "nowhere").list() == []

    def test_failed_replace_removes_temp_file(
        self, checkpoint_store: CheckpointStore, sample_deposit: Deposit, monkeypatch
    ):
        def refuse(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(CheckpointError, match="could not write checkpoint"):
            checkpoint_store.save(_checkpoint(sample_deposit))

        folder = checkpoint_store.path_for(CONTRACT_B, 41).parent
        assert list(folder.iterdir()) == []

    def test_root_under_regular_file(self, tmp_path, sample_deposit: Deposit):
        (tmp_path / "file").write_text("")
        store = CheckpointStore(tmp_path / "file" / "checkpoints")

        assert store.load(CONTRACT_B, 41) is None
        with pytest.raises(CheckpointError):
            store.save(_checkpoint(sample_deposit))

    def test_signed_transaction_round_trips(self, checkpoint_store: CheckpointStore, sample_deposit: Deposit):
        cp = _checkpoint(sample_deposit, state=RunState.DEPOSIT_READ)
        cp.order_raw_tx = "0xf86b80"
        checkpoint_store.save(cp)

        loaded = checkpoint_store.load(CONTRACT_B, 41)
        assert loaded.order_tx_hash == "0xorder"
        assert loaded.order_raw_tx == "0xf86b80"
        assert loaded.claim_raw_tx is None
