"""Core configuration for the fulfillment solver."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from eth_utils import is_address, to_checksum_address
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from solver.core.errors import ConfigurationError

_SECRET_MARKERS = ("key", "secret", "token", "password")


class Settings(BaseSettings):
    """Solver settings loaded from environment variables.

    Required variables keep the names the deployment scripts already export
    (``HERODOTUS_API_KEY``, ``CHAIN_A_RPC_URL`` ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Required ─────────────────────────────────────────────────────────
    herodotus_api_key: str = Field(min_length=1)
    chain_a_rpc_url: str = Field(min_length=1)
    chain_b_rpc_url: str = Field(min_length=1)
    multi_token_deposit_address_a: str
    multi_token_deposit_address_b: str
    private_key: str = Field(min_length=1)

    # ── App ──────────────────────────────────────────────────────────────
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Attestation service ──────────────────────────────────────────────
    herodotus_api_url: str = "https://api.herodotus.cloud"
    attestation_poll_interval: float = Field(default=5.0, gt=0)
    attestation_max_wait: float = Field(default=3600.0, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)

    # ── Chains ───────────────────────────────────────────────────────────
    receipt_timeout: float = Field(default=180.0, gt=0)
    fulfillment_mapping_slot: int = Field(default=1, ge=0)
    verify_slots_locally: bool = True
    strict_slot_verification: bool = False

    # ── Checkpoints ──────────────────────────────────────────────────────
    checkpoint_dir: Path = Path(".solver/checkpoints")

    @field_validator("multi_token_deposit_address_a", "multi_token_deposit_address_b")
    @classmethod
    def _checksum_address(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"not a valid contract address: {value!r}")
        return to_checksum_address(value)

    @field_validator("herodotus_api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def redacted(self) -> dict[str, Any]:
        """Return settings as a dict with secrets masked."""
        out: dict[str, Any] = {}
        for name in sorted(type(self).model_fields):
            val = getattr(self, name)
            if any(marker in name for marker in _SECRET_MARKERS):
                val = "****" if val else "(not set)"
            out[name] = val
        return out


def load_settings(env_file: str | Path | None = ".env", **overrides: Any) -> Settings:
    """Build a fresh ``Settings`` or raise ``ConfigurationError``.

    Missing required variables are reported together, by environment name.
    """
    try:
        return Settings(_env_file=env_file, **overrides)
    except ValidationError as exc:
        missing: list[str] = []
        invalid: list[str] = []
        for err in exc.errors():
            name = str(err["loc"][0]) if err.get("loc") else "?"
            if err.get("type") == "missing":
                missing.append(name.upper())
            else:
                invalid.append(f"{name.upper()}: {err.get('msg', 'invalid value')}")
        parts = []
        if missing:
            parts.append("missing required settings: " + ", ".join(missing))
        if invalid:
            parts.append("invalid settings: " + "; ".join(invalid))
        raise ConfigurationError(
            "; ".join(parts) or str(exc),
            step="configuration",
            context={"missing": missing, "invalid": invalid},
        ) from exc
