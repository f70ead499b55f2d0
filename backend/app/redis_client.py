"""Redis connection pool and key layout for wallets and round summaries."""

from __future__ import annotations

import os
from typing import Optional

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


def wallet_key(participant_id: str) -> str:
    return f"wallet:{participant_id}:balance"


def transactions_key(participant_id: str) -> str:
    return f"wallet:{participant_id}:transactions"


def reference_key(reference: str) -> str:
    return f"ledger:ref:{reference}"


def round_key(round_id: str) -> str:
    return f"round:{round_id}"


ROUNDS_FINISHED_KEY = "rounds:finished"


def withdrawal_key(withdrawal_id: str) -> str:
    return f"withdrawal:{withdrawal_id}"


# Withdrawal ids scored by request time
WITHDRAWALS_KEY = "withdrawals:requested"


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
