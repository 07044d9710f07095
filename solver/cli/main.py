"""Solver CLI: fulfill cross-chain deposits and claim them with storage proofs.

Usage:
    solver run                          Fulfill and claim the latest deposit on chain A
    solver run --deposit-id 41 42       Process specific deposits concurrently
    solver resume <deposit-id>          Resume a checkpointed run
    solver slots <order-id>             Print the storage slots of a fulfillment order
    solver status <query-id>            Show the status of an attestation query
    solver checkpoints                  List stored run checkpoints
    solver config                       Show current configuration

Examples:
    solver run --json
    solver slots 42 --mapping-slot 1
    solver resume 41
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from solver.chain.slots import DEFAULT_MAPPING_SLOT, StorageSlotDeriver
from solver.core.errors import ConfigurationError, SolverError
from solver.core.types import RunState

__version__ = "0.1.0"


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_STATE_COLOR = {
    RunState.CLAIMED: _GREEN,
    RunState.FAILED: _RED,
}

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


BANNER = f"{_BOLD}{_CYAN}xchain-solver{_RESET} {_DIM}v{__version__}: fulfill, prove, claim{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solver",
        description="Cross-chain fulfillment solver",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")

    sub = parser.add_subparsers(dest="command")

    # ── run ──────────────────────────────────────────────────────────────────
    run_p = sub.add_parser("run", help="Fulfill and claim deposits")
    run_p.add_argument(
        "--deposit-id",
        "-d",
        type=int,
        nargs="+",
        dest="deposit_ids",
        help="Deposit ids to process (default: the latest deposit)",
    )

    # ── resume ───────────────────────────────────────────────────────────────
    resume_p = sub.add_parser("resume", help="Resume a checkpointed run")
    resume_p.add_argument("deposit_id", type=int, help="Deposit id of the run to resume")

    # ── slots ────────────────────────────────────────────────────────────────
    slots_p = sub.add_parser("slots", help="Derive the storage slots of an order")
    slots_p.add_argument("order_id", type=int, help="Fulfillment order id")
    slots_p.add_argument(
        "--mapping-slot",
        type=int,
        default=DEFAULT_MAPPING_SLOT,
        help=f"Storage index of the order mapping (default: {DEFAULT_MAPPING_SLOT})",
    )

    # ── status ───────────────────────────────────────────────────────────────
    status_p = sub.add_parser("status", help="Show an attestation query's status")
    status_p.add_argument("query_id", help="Query id returned at submission")

    # ── checkpoints ──────────────────────────────────────────────────────────
    sub.add_parser("checkpoints", help="List stored run checkpoints")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Output ───────────────────────────────────────────────────────────────────


def _print_report(report: Any, quiet: bool = False) -> None:
    color = _STATE_COLOR.get(report.state, _YELLOW)
    print(f"\n{_BOLD}Run {report.run_id}{_RESET}  {_c(report.state.value, color + _BOLD)}")
    if report.deposit is not None:
        d = report.deposit
        print(f"  Deposit #{d.deposit_id}: {d.amount} of {d.token} from {d.user} (wants {d.token_wanted})")
    if quiet:
        if report.error is not None:
            print(_c(f"  {report.error}", _RED))
        return

    rows = [
        ("order tx", report.order_tx_hash),
        ("block", report.block_number),
        ("order id", report.order_id),
        ("query id", report.query_id),
        ("claim tx", report.claim_tx_hash),
    ]
    for label, value in rows:
        if value is not None:
            print(f"  {_DIM}{label:>9}:{_RESET} {value}")
    if report.resumed:
        print(f"  {_DIM}(resumed from checkpoint){_RESET}")
    if report.error is not None:
        err = report.error
        print(_c(f"  {err.code.value} at {err.step or '?'}: {err.message}", _RED))
        if err.resumable:
            print(_c("  This failure is resumable: `solver resume <deposit-id>`", _YELLOW))
    print()


def _emit_reports(reports: list, args: argparse.Namespace) -> int:
    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2, default=str))
    else:
        for report in reports:
            _print_report(report, quiet=args.quiet)
    return EXIT_OK if all(r.succeeded for r in reports) else EXIT_FAILED


# ── Commands ─────────────────────────────────────────────────────────────────


def _load(args: argparse.Namespace):
    from solver.core.config import load_settings
    from solver.core.logging import setup_logging

    settings = load_settings(env_file=args.env_file)
    setup_logging(settings.app_env, "WARNING" if args.quiet else settings.log_level)
    return settings


async def _run_fulfill(args: argparse.Namespace) -> int:
    from solver.pipeline.orchestrator import FulfillmentOrchestrator

    settings = _load(args)
    async with FulfillmentOrchestrator.from_settings(settings) as orchestrator:
        if args.deposit_ids:
            reports = await orchestrator.run_many(args.deposit_ids)
        else:
            reports = [await orchestrator.run()]
    return _emit_reports(reports, args)


async def _run_resume(args: argparse.Namespace) -> int:
    from solver.pipeline.orchestrator import FulfillmentOrchestrator

    settings = _load(args)
    async with FulfillmentOrchestrator.from_settings(settings) as orchestrator:
        report = await orchestrator.resume_deposit(args.deposit_id)
    return _emit_reports([report], args)


def _run_slots(args: argparse.Namespace) -> int:
    slots = StorageSlotDeriver(args.mapping_slot).derive(args.order_id)
    if args.json:
        print(json.dumps(slots.model_dump(), indent=2))
        return EXIT_OK

    print(f"\n{_BOLD}Order {slots.order_id}{_RESET} {_DIM}(mapping slot {slots.mapping_slot}){_RESET}")
    print(f"  {_DIM}{'base':>10}:{_RESET} {slots.base_slot}")
    for field, slot in slots.items():
        print(f"  {_DIM}{field.name.lower():>10}:{_RESET} {_c(slot, _CYAN)}")
    print()
    return EXIT_OK


async def _run_status(args: argparse.Namespace) -> int:
    from solver.attestation.client import AttestationClient

    settings = _load(args)
    async with AttestationClient(
        settings.herodotus_api_key,
        base_url=settings.herodotus_api_url,
        timeout=settings.http_timeout,
    ) as client:
        status = await client.poll_query_status(args.query_id)

    if args.json:
        print(json.dumps(status.model_dump(mode="json"), indent=2, default=str))
    else:
        print(f"  {args.query_id}: {_c(status.raw_status or status.status.value, _CYAN)}")
        if status.result is not None and not args.quiet:
            print(json.dumps(status.result, indent=2, default=str))
    return EXIT_OK


def _run_checkpoints(args: argparse.Namespace) -> int:
    from solver.pipeline.checkpoint import CheckpointStore

    settings = _load(args)
    checkpoints = CheckpointStore(settings.checkpoint_dir).list()
    if args.json:
        print(json.dumps([cp.model_dump(mode="json") for cp in checkpoints], indent=2))
        return EXIT_OK
    if not checkpoints:
        print(_c("  No checkpoints stored.", _DIM))
    for cp in checkpoints:
        color = _STATE_COLOR.get(cp.state, _YELLOW)
        failed = f"  {_c('last error: ' + cp.failure.code, _RED)}" if cp.failure else ""
        print(f"  deposit #{cp.deposit_id}  {_c(cp.state.value, color)}  {_DIM}{cp.run_id}{_RESET}{failed}")
    return EXIT_OK


def _run_config(args: argparse.Namespace) -> int:
    """Print current settings (redacted)."""
    settings = _load(args)
    print(f"\n{_BOLD}Solver Configuration{_RESET}\n")
    for field_name, val in settings.redacted().items():
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return EXIT_OK


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"solver {__version__}")
        return EXIT_OK

    if not args.no_banner and not args.quiet and not args.json:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    try:
        if args.command == "slots":
            return _run_slots(args)
        if args.command == "config":
            return _run_config(args)
        if args.command == "checkpoints":
            return _run_checkpoints(args)
        if args.command == "run":
            return asyncio.run(_run_fulfill(args))
        if args.command == "resume":
            return asyncio.run(_run_resume(args))
        if args.command == "status":
            return asyncio.run(_run_status(args))
    except ConfigurationError as exc:
        print(_c(f"Configuration error: {exc.message}", _RED), file=sys.stderr)
        return EXIT_CONFIG
    except SolverError as exc:
        print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return EXIT_FAILED

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
