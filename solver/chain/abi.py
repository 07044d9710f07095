"""ABI of the MultiTokenDeposit contract (the functions the solver calls)."""

from __future__ import annotations

from typing import Any

MULTI_TOKEN_DEPOSIT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "depositNonce",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "deposits",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "depositId", "type": "uint256"},
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "tokenWanted", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "timestamp", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "createFulfillmentOrder",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "depositId", "type": "uint256"},
            {"name": "amount", "type": "uint256"},
            {"name": "token", "type": "address"},
            {"name": "user", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "claimWithProof",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "depositId", "type": "uint256"},
            {"name": "amount", "type": "uint256"},
            {"name": "blockNumber", "type": "uint256"},
            {"name": "orderId", "type": "uint256"},
        ],
        "outputs": [],
    },
]
