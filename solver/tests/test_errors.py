"""Tests for solver.core.errors: error codes and step outcomes."""

from __future__ import annotations

import asyncio

import pytest

from solver.core.errors import (
    AttestationStatusError,
    AttestationTimeout,
    ErrorCode,
    SolverError,
    StepOutcome,
    TransactionError,
)


async def _value(v):
    return v


async def _raise(exc: BaseException):
    raise exc


class TestSolverError:
    def test_to_dict(self):
        err = TransactionError("reverted", tx_hash="0xabc", step="claim", context={"deposit_id": 41})
        assert err.to_dict() == {
            "code": "TRANSACTION_ERROR",
            "message": "reverted",
            "step": "claim",
            "context": {"deposit_id": 41, "tx_hash": "0xabc"},
            "resumable": False,
        }
        assert str(err) == "[claim] reverted"

    def test_resumable_flags(self):
        assert AttestationTimeout("late", query_id="q", waited=1.0).resumable
        assert AttestationStatusError("503").resumable
        assert not TransactionError("x").resumable


class TestStepOutcome:
    @pytest.mark.asyncio
    async def test_value(self):
        outcome = await StepOutcome.capture("read_deposit", _value(41))
        assert outcome.ok
        assert outcome.value == 41
        assert outcome.tag is None

    @pytest.mark.asyncio
    async def test_solver_error_tagged(self):
        outcome = await StepOutcome.capture(
            "claim", _raise(TransactionError("reverted")), {"deposit_id": 41}
        )
        assert not outcome.ok
        assert outcome.tag is ErrorCode.TRANSACTION_ERROR
        assert outcome.error.step == "claim"
        assert outcome.error.context["deposit_id"] == 41

    @pytest.mark.asyncio
    async def test_existing_step_and_context_kept(self):
        err = SolverError("x", step="inner", context={"deposit_id": 1})
        outcome = await StepOutcome.capture("outer", _raise(err), {"deposit_id": 41, "run_id": "r"})
        assert outcome.error.step == "inner"
        assert outcome.error.context == {"deposit_id": 1, "run_id": "r"}

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        outcome = await StepOutcome.capture("await_proof", _raise(RuntimeError("boom")))
        assert outcome.tag is ErrorCode.INTERNAL_ERROR
        assert "RuntimeError: boom" in outcome.error.message
        assert isinstance(outcome.error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        with pytest.raises(asyncio.CancelledError):
            await StepOutcome.capture("await_proof", _raise(asyncio.CancelledError()))
