"""File-backed run checkpoints, one JSON document per deposit."""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from solver.core.errors import CheckpointError
from solver.core.types import RunCheckpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Persist ``RunCheckpoint`` documents under ``root/<contract>/<deposit>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, contract_b: str, deposit_id: int) -> Path:
        return self.root / contract_b.lower() / f"{deposit_id}.json"

    def load(self, contract_b: str, deposit_id: int) -> RunCheckpoint | None:
        path = self.path_for(contract_b, deposit_id)
        if not path.exists():
            return None
        try:
            return RunCheckpoint.model_validate_json(path.read_text())
        except (OSError, ValueError, ValidationError) as exc:
            raise CheckpointError(
                f"unreadable checkpoint {path}: {exc}",
                step="checkpoint",
                context={"path": str(path), "deposit_id": deposit_id},
            ) from exc

    def save(self, checkpoint: RunCheckpoint) -> Path:
        """Atomically write ``checkpoint``; returns the file path."""
        if checkpoint.deposit is None:
            raise CheckpointError("cannot checkpoint a run before its deposit is known", step="checkpoint")

        checkpoint.updated_at = datetime.now(timezone.utc)
        path = self.path_for(checkpoint.contract_b, checkpoint.deposit.deposit_id)
        tmp: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            with os.fdopen(fd, "w") as fh:
                fh.write(checkpoint.model_dump_json(indent=2))
            os.replace(tmp, path)
        except OSError as exc:
            if tmp is not None:
                Path(tmp).unlink(missing_ok=True)
            raise CheckpointError(
                f"could not write checkpoint {path}: {exc}",
                step="checkpoint",
                context={"path": str(path), "deposit_id": checkpoint.deposit.deposit_id},
            ) from exc

        logger.debug(
            "Checkpoint %s saved at state %s", path.name, checkpoint.state.value,
            extra={"run_id": checkpoint.run_id, "state": checkpoint.state.value},
        )
        return path

    def list(self, contract_b: str | None = None) -> list[RunCheckpoint]:
        """Return every stored checkpoint, optionally for one contract."""
        base = self.root / contract_b.lower() if contract_b else self.root
        if not base.exists():
            return []
        out: list[RunCheckpoint] = []
        for path in sorted(base.rglob("*.json")):
            try:
                out.append(RunCheckpoint.model_validate_json(path.read_text()))
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Skipping unreadable checkpoint %s: %s", path, exc)
        return out
