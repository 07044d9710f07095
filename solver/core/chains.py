"""Chain endpoint configurations for the two sides of a transfer."""

from __future__ import annotations

from dataclasses import dataclass

from solver.core.config import Settings


@dataclass(frozen=True)
class ChainConfig:
    """One chain endpoint and the MultiTokenDeposit contract deployed on it."""

    name: str
    rpc_url: str
    contract_address: str
    role: str  # "source" (deposits, claims) or "destination" (fulfillment)


def chains_from_settings(settings: Settings) -> dict[str, ChainConfig]:
    """Return the source (A) and destination (B) chain configs."""
    return {
        "A": ChainConfig(
            name="A",
            rpc_url=settings.chain_a_rpc_url,
            contract_address=settings.multi_token_deposit_address_a,
            role="source",
        ),
        "B": ChainConfig(
            name="B",
            rpc_url=settings.chain_b_rpc_url,
            contract_address=settings.multi_token_deposit_address_b,
            role="destination",
        ),
    }
