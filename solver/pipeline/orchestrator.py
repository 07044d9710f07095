"""Fulfillment orchestrator: drives one deposit from read to claim."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from eth_account import Account

from solver.attestation.client import AttestationClient
from solver.attestation.models import ProofResult
from solver.chain.reader import ChainReader
from solver.chain.slots import StorageSlotDeriver
from solver.chain.writer import ChainWriter, TransactionQueue
from solver.core.chains import chains_from_settings
from solver.core.config import Settings
from solver.core.errors import (
    AlreadyClaimed,
    ChainReadError,
    CheckpointError,
    ConfigurationError,
    SlotMismatchError,
    SolverError,
    StepOutcome,
    TransactionError,
)
from solver.core.logging import RunLogAdapter
from solver.core.types import (
    Deposit,
    FulfillmentOrder,
    RunCheckpoint,
    RunFailure,
    RunState,
    StorageSlotMap,
    order_id_for_deposit,
)
from solver.pipeline.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)


# ── Run bookkeeping ──────────────────────────────────────────────────────────


@dataclass
class RunReport:
    """Terminal outcome of one run, returned to the caller."""

    run_id: str
    state: RunState
    deposit: Deposit | None = None
    order_tx_hash: str | None = None
    block_number: int | None = None
    order_id: int | None = None
    slots: StorageSlotMap | None = None
    query_id: str | None = None
    proof: ProofResult | None = None
    claim_tx_hash: str | None = None
    error: SolverError | None = None
    resumed: bool = False
    history: list[RunState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.CLAIMED

    def raise_for_state(self) -> None:
        """Re-raise the recorded error if the run FAILED."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "deposit": self.deposit.model_dump() if self.deposit else None,
            "order_tx_hash": self.order_tx_hash,
            "block_number": self.block_number,
            "order_id": self.order_id,
            "slots": self.slots.model_dump() if self.slots else None,
            "query_id": self.query_id,
            "proof": self.proof.model_dump() if self.proof else None,
            "claim_tx_hash": self.claim_tx_hash,
            "error": self.error.to_dict() if self.error else None,
            "resumed": self.resumed,
            "history": [s.value for s in self.history],
        }


@dataclass
class _Run:
    checkpoint: RunCheckpoint
    log: RunLogAdapter
    state: RunState
    resumed: bool = False
    slots: StorageSlotMap | None = None
    proof: ProofResult | None = None
    history: list[RunState] = field(default_factory=list)

    def context(self) -> dict[str, Any]:
        cp = self.checkpoint
        ctx: dict[str, Any] = {"run_id": cp.run_id}
        for key in ("deposit_id", "order_id", "block_number", "query_id"):
            val = getattr(cp, key)
            if val is not None:
                ctx[key] = val
        return ctx

    def report(self, error: SolverError | None = None) -> RunReport:
        cp = self.checkpoint
        return RunReport(
            run_id=cp.run_id,
            state=self.state,
            deposit=cp.deposit,
            order_tx_hash=cp.order_tx_hash,
            block_number=cp.block_number,
            order_id=cp.order_id,
            slots=self.slots,
            query_id=cp.query_id,
            proof=self.proof,
            claim_tx_hash=cp.claim_tx_hash,
            error=error,
            resumed=self.resumed,
            history=list(self.history),
        )


# ── Orchestrator ─────────────────────────────────────────────────────────────


class FulfillmentOrchestrator:
    """Coordinates the cross-chain fulfillment pipeline.

    Flow for one deposit:
    1. DEPOSIT_READ: read the deposit from chain A
    2. ORDER_CREATED: create the fulfillment order on chain B, keep its block
    3. QUERY_SUBMITTED: derive the order's storage slots, submit the proof query
    4. PROOF_READY: poll the attestation service until DONE
    5. CLAIMED: claim on chain A with (depositId, amount, blockNumber, orderId)

    Any error ends the run in FAILED. Progress is checkpointed after every
    transition so a later ``resume`` continues from the last completed state.
    """

    # state -> (step name, handler) that moves the run to the next state
    _STEPS = {
        RunState.DEPOSIT_READ: ("create_order", "_create_order"),
        RunState.ORDER_CREATED: ("submit_query", "_submit_query"),
        RunState.QUERY_SUBMITTED: ("await_proof", "_await_proof"),
        RunState.PROOF_READY: ("claim", "_claim"),
    }

    def __init__(
        self,
        settings: Settings,
        *,
        reader_a: ChainReader,
        writer_a: ChainWriter,
        reader_b: ChainReader,
        writer_b: ChainWriter,
        attestation: AttestationClient,
        deriver: StorageSlotDeriver | None = None,
        checkpoints: CheckpointStore | None = None,
    ) -> None:
        self._settings = settings
        chains = chains_from_settings(settings)
        self.contract_a = chains["A"].contract_address
        self.contract_b = chains["B"].contract_address
        self._reader_a = reader_a
        self._writer_a = writer_a
        self._reader_b = reader_b
        self._writer_b = writer_b
        self._attestation = attestation
        self._deriver = deriver or StorageSlotDeriver(settings.fulfillment_mapping_slot)
        self._checkpoints = checkpoints or CheckpointStore(settings.checkpoint_dir)
        self._deposit_locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "FulfillmentOrchestrator":
        """Wire readers, writers and the attestation client from settings.

        Each chain gets one shared AsyncWeb3 connection; both writers share a
        single transaction queue for the signing credential.
        """
        try:
            account = Account.from_key(settings.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                "PRIVATE_KEY is not a valid signing key", step="configuration"
            ) from exc

        chains = chains_from_settings(settings)
        queue = TransactionQueue()
        reader_a = ChainReader.from_url(chains["A"].rpc_url, "A", settings.http_timeout)
        reader_b = ChainReader.from_url(chains["B"].rpc_url, "B", settings.http_timeout)
        return cls(
            settings,
            reader_a=reader_a,
            writer_a=ChainWriter(
                reader_a.web3, account, "A", queue=queue, receipt_timeout=settings.receipt_timeout
            ),
            reader_b=reader_b,
            writer_b=ChainWriter(
                reader_b.web3, account, "B", queue=queue, receipt_timeout=settings.receipt_timeout
            ),
            attestation=AttestationClient(
                settings.herodotus_api_key,
                base_url=settings.herodotus_api_url,
                timeout=settings.http_timeout,
            ),
        )

    async def __aenter__(self) -> FulfillmentOrchestrator:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._attestation.close()

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    # ── Entry points ─────────────────────────────────────────────────────

    async def run(self) -> RunReport:
        """Process the most recent deposit on chain A."""
        run = self._new_run()
        outcome = await StepOutcome.capture(
            "read_deposit", self._reader_a.get_last_deposit(self.contract_a), run.context()
        )
        if not outcome.ok:
            return self._fail(run, outcome.error)
        return await self._start(run, outcome.value)

    async def run_for_deposit(self, deposit_id: int) -> RunReport:
        """Process the deposit with id ``deposit_id``."""
        run = self._new_run()
        outcome = await StepOutcome.capture(
            "read_deposit",
            self._reader_a.get_deposit(self.contract_a, deposit_id),
            {**run.context(), "deposit_id": deposit_id},
        )
        if not outcome.ok:
            return self._fail(run, outcome.error)
        return await self._start(run, outcome.value)

    async def run_many(self, deposit_ids: Iterable[int]) -> list[RunReport]:
        """Process several deposits concurrently, one independent run each."""
        unique = list(dict.fromkeys(deposit_ids))
        return list(await asyncio.gather(*(self.run_for_deposit(d) for d in unique)))

    async def resume_deposit(self, deposit_id: int) -> RunReport:
        """Resume the checkpointed run for ``deposit_id``."""
        run = self._new_run()
        try:
            checkpoint = self._checkpoints.load(self.contract_b, deposit_id)
        except CheckpointError as exc:
            return self._fail(run, exc)
        if checkpoint is None:
            return self._fail(
                run,
                CheckpointError(
                    f"no checkpoint for deposit {deposit_id}",
                    step="resume",
                    context={"deposit_id": deposit_id},
                ),
            )
        return await self.resume(checkpoint)

    async def resume(self, checkpoint: RunCheckpoint) -> RunReport:
        """Continue a run from the last completed state in ``checkpoint``.

        A transaction already signed is re-broadcast and waited on, never
        signed again; a query already submitted is re-polled under the same id.
        """
        if checkpoint.deposit is None:
            run = self._new_run(checkpoint.run_id)
            return self._fail(
                run,
                CheckpointError("checkpoint has no deposit; start a new run", step="resume"),
            )
        async with self._lock_for(checkpoint.deposit.deposit_id):
            return await self._resume_locked(checkpoint)

    # ── Run lifecycle ────────────────────────────────────────────────────

    def _new_run(self, run_id: str | None = None) -> _Run:
        run_id = run_id or str(uuid.uuid4())
        return _Run(
            checkpoint=RunCheckpoint(run_id=run_id, contract_b=self.contract_b),
            log=RunLogAdapter(logger, {"run_id": run_id}),
            state=RunState.START,
            history=[RunState.START],
        )

    def _lock_for(self, deposit_id: int) -> asyncio.Lock:
        return self._deposit_locks.setdefault(deposit_id, asyncio.Lock())

    async def _start(self, run: _Run, deposit: Deposit) -> RunReport:
        async with self._lock_for(deposit.deposit_id):
            try:
                existing = self._checkpoints.load(self.contract_b, deposit.deposit_id)
            except CheckpointError as exc:
                run.checkpoint.deposit = deposit
                return self._fail(run, exc, persist=False)

            if existing is not None:
                run.log.info(
                    "Deposit #%d already has a run at %s; resuming instead of creating a new order",
                    deposit.deposit_id, existing.state.value,
                )
                return await self._resume_locked(existing)

            run.checkpoint.deposit = deposit
            run.log.bind(deposit_id=deposit.deposit_id)
            try:
                self._advance(run, RunState.DEPOSIT_READ)
            except CheckpointError as exc:
                return self._fail(run, exc, persist=False)
            return await self._drive(run)

    async def _resume_locked(self, checkpoint: RunCheckpoint) -> RunReport:
        run = _Run(
            checkpoint=checkpoint,
            log=RunLogAdapter(
                logger, {"run_id": checkpoint.run_id, "deposit_id": checkpoint.deposit_id}
            ),
            state=checkpoint.state,
            resumed=True,
            history=[checkpoint.state],
        )
        if checkpoint.state is RunState.CLAIMED:
            return self._fail(
                run,
                AlreadyClaimed(
                    f"deposit {checkpoint.deposit_id} was already claimed "
                    f"(tx {checkpoint.claim_tx_hash})",
                    step="resume",
                    context=run.context(),
                ),
                persist=False,
            )
        run.log.info("Resuming run from %s", checkpoint.state.value, extra={"state": checkpoint.state.value})
        return await self._drive(run)

    async def _drive(self, run: _Run) -> RunReport:
        try:
            while not run.state.is_terminal:
                step, handler = self._STEPS[run.state]
                outcome = await StepOutcome.capture(step, getattr(self, handler)(run), run.context())
                if not outcome.ok:
                    return self._fail(run, outcome.error)
        except asyncio.CancelledError:
            run.log.warning(
                "Run cancelled at %s; checkpoint kept for resume", run.state.value,
                extra={"state": run.state.value},
            )
            raise

        run.log.info("Run finished: %s", run.state.value, extra={"state": run.state.value})
        return run.report()

    def _advance(self, run: _Run, state: RunState, **fields: Any) -> None:
        cp = run.checkpoint
        for key, val in fields.items():
            setattr(cp, key, val)
        cp.state = state
        cp.failure = None
        self._checkpoints.save(cp)
        run.state = state
        run.history.append(state)
        run.log.info("-> %s", state.value, extra={"state": state.value, **run.context()})

    def _record(self, run: _Run, **fields: Any) -> None:
        """Persist fields without changing state (e.g. a signed transaction)."""
        for key, val in fields.items():
            setattr(run.checkpoint, key, val)
        self._checkpoints.save(run.checkpoint)

    def _fail(self, run: _Run, error: SolverError, *, persist: bool = True) -> RunReport:
        run.state = RunState.FAILED
        run.history.append(RunState.FAILED)
        cp = run.checkpoint
        if persist and cp.deposit is not None:
            cp.failure = RunFailure(**error.to_dict())
            try:
                self._checkpoints.save(cp)
            except CheckpointError as exc:
                run.log.error("Could not record failure in checkpoint: %s", exc)
        run.log.error(
            "Run FAILED at %s: %s (%s)%s",
            error.step or "?", error.message, error.code.value,
            " (resumable)" if error.resumable else "",
            extra={"state": RunState.FAILED.value, "step": error.step, **run.context()},
        )
        return run.report(error)

    # ── Steps ────────────────────────────────────────────────────────────

    async def _create_order(self, run: _Run) -> None:
        cp = run.checkpoint
        deposit = cp.deposit
        try:
            if cp.order_tx_hash:
                run.log.info("Order transaction %s already signed; re-broadcasting and waiting", cp.order_tx_hash)
                receipt = await self._writer_b.resume_transaction(
                    cp.order_tx_hash, cp.order_raw_tx, step="create_order"
                )
            else:
                order = FulfillmentOrder.from_deposit(deposit)
                receipt = await self._writer_b.create_fulfillment_order(
                    self.contract_b,
                    order.deposit_id,
                    order.amount,
                    order.token,
                    order.user,
                    on_signed=lambda tx_hash, raw: self._record(run, order_tx_hash=tx_hash, order_raw_tx=raw),
                )
        except TransactionError as exc:
            if exc.receipt is not None or exc.rejected:
                # Reverted or refused: nothing was written, a later resume may submit again.
                self._record(run, order_tx_hash=None, order_raw_tx=None)
            raise

        self._advance(
            run,
            RunState.ORDER_CREATED,
            order_tx_hash=receipt.tx_hash,
            order_raw_tx=None,
            block_number=receipt.block_number,
            order_id=order_id_for_deposit(deposit.deposit_id),
        )

    async def _submit_query(self, run: _Run) -> None:
        cp = run.checkpoint
        slots = self._deriver.derive(cp.order_id)
        run.slots = slots

        if self._settings.verify_slots_locally:
            await self._verify_slots(run, slots)

        query_id = await self._attestation.submit_batch_query(
            cp.block_number, self.contract_b, slots.as_list()
        )
        self._advance(run, RunState.QUERY_SUBMITTED, query_id=query_id)

    async def _await_proof(self, run: _Run) -> None:
        cp = run.checkpoint
        if run.slots is None:
            run.slots = self._deriver.derive(cp.order_id)
        proof = await self._attestation.await_completion(
            cp.query_id,
            poll_interval=self._settings.attestation_poll_interval,
            max_wait=self._settings.attestation_max_wait,
        )
        run.proof = proof
        self._advance(run, RunState.PROOF_READY, proof=proof.result)

    async def _claim(self, run: _Run) -> None:
        cp = run.checkpoint
        deposit = cp.deposit
        if run.proof is None and cp.query_id:
            run.proof = ProofResult(query_id=cp.query_id, result=cp.proof)

        try:
            if cp.claim_tx_hash:
                run.log.info("Claim transaction %s already signed; re-broadcasting and waiting", cp.claim_tx_hash)
                receipt = await self._writer_a.resume_transaction(
                    cp.claim_tx_hash, cp.claim_raw_tx, step="claim"
                )
            else:
                receipt = await self._writer_a.claim_with_proof(
                    self.contract_a,
                    deposit.deposit_id,
                    deposit.amount,
                    cp.block_number,
                    cp.order_id,
                    on_signed=lambda tx_hash, raw: self._record(run, claim_tx_hash=tx_hash, claim_raw_tx=raw),
                )
        except TransactionError as exc:
            if exc.receipt is not None or exc.rejected:
                self._record(run, claim_tx_hash=None, claim_raw_tx=None)
            raise
        self._advance(run, RunState.CLAIMED, claim_tx_hash=receipt.tx_hash, claim_raw_tx=None)

    async def _verify_slots(self, run: _Run, slots: StorageSlotMap) -> None:
        """Read the derived slots at the order's block and compare with the order.

        Diagnostic only: read failures are logged, and a mismatch is a warning
        unless strict verification is enabled.
        """
        cp = run.checkpoint
        expected = FulfillmentOrder.from_deposit(cp.deposit)
        try:
            observed = await self._reader_b.read_order(self.contract_b, slots, cp.block_number)
        except ChainReadError as exc:
            run.log.warning("Local slot check skipped: %s", exc)
            return

        run.log.info(
            "Slot values at block %d: depositId=%d user=%s token=%s amount=%d",
            cp.block_number, observed.deposit_id, observed.user, observed.token, observed.amount,
        )
        if observed == expected:
            return

        mismatches = {
            name: {"expected": getattr(expected, name), "observed": getattr(observed, name)}
            for name in FulfillmentOrder.model_fields
            if getattr(expected, name) != getattr(observed, name)
        }
        if self._settings.strict_slot_verification:
            raise SlotMismatchError(
                f"storage at order {cp.order_id} slots does not match the order",
                step="submit_query",
                context={**run.context(), "mismatches": mismatches},
            )
        run.log.warning("Storage at order %d slots does not match the order: %s", cp.order_id, mismatches)
