"""Round summaries: Redis-backed record of every completed round.

Each summary is stored under its own key and indexed in a sorted set scored
by finish time, so reporting can list recent rounds and compute house
revenue without a separate database.  Entries older than
ROUND_RETENTION_DAYS are pruned by ``prune_old_rounds``.

These writes are best-effort: they are a reporting copy, and the ledger
stays the source of truth for money.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.exceptions import StorageUnavailable
from app.models import RoundSummary
from app.redis_client import ROUNDS_FINISHED_KEY, round_key

ROUND_RETENTION_DAYS = 90


class RoundStore:
    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def store_round_summary(self, summary: RoundSummary) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(round_key(summary.round_id), summary.model_dump_json())
                pipe.zadd(ROUNDS_FINISHED_KEY, {summary.round_id: summary.finished_at})
                await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Could not store round {summary.round_id}") from e

    async def prune_old_rounds(self, now: Optional[float] = None) -> int:
        """Remove summaries older than ROUND_RETENTION_DAYS.  Returns the count."""
        cutoff = (now or time.time()) - (ROUND_RETENTION_DAYS * 86400)
        try:
            old_ids = await self._redis.zrangebyscore(ROUNDS_FINISHED_KEY, "-inf", cutoff)
            if old_ids:
                await self._redis.delete(*[round_key(r) for r in old_ids])
                await self._redis.zrem(ROUNDS_FINISHED_KEY, *old_ids)
        except RedisError as e:
            raise StorageUnavailable("Could not prune round summaries") from e
        return len(old_ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def load_round_summary(self, round_id: str) -> Optional[RoundSummary]:
        try:
            raw = await self._redis.get(round_key(round_id))
        except RedisError as e:
            raise StorageUnavailable(f"Could not load round {round_id}") from e
        if raw is None:
            return None
        return RoundSummary.model_validate_json(raw)

    async def recent_rounds(self, limit: int = 20) -> list[RoundSummary]:
        """Most recently finished rounds first."""
        try:
            round_ids = await self._redis.zrevrange(ROUNDS_FINISHED_KEY, 0, limit - 1)
            rounds = []
            for round_id in round_ids:
                raw = await self._redis.get(round_key(round_id))
                if raw is not None:
                    rounds.append(RoundSummary.model_validate_json(raw))
        except RedisError as e:
            raise StorageUnavailable("Could not list rounds") from e
        return rounds

    async def get_summary(self, now: Optional[float] = None) -> dict[str, Any]:
        """Rounds finished, pot volume and house revenue over the last 24 h."""
        since_24h = (now or time.time()) - 86400
        try:
            round_ids = await self._redis.zrangebyscore(ROUNDS_FINISHED_KEY, since_24h, "+inf")
            summaries = []
            for round_id in round_ids:
                raw = await self._redis.get(round_key(round_id))
                if raw is not None:
                    summaries.append(RoundSummary.model_validate_json(raw))
        except RedisError as e:
            raise StorageUnavailable("Could not build round summary") from e

        by_stake: dict[int, int] = {}
        for s in summaries:
            by_stake[s.stake] = by_stake.get(s.stake, 0) + 1

        return {
            "rounds_finished_24h": len(summaries),
            "rounds_by_stake_24h": {str(k): v for k, v in sorted(by_stake.items())},
            "pot_volume_24h": sum(s.pot for s in summaries),
            "house_take_24h": sum(s.house_take for s in summaries),
            "rounds_without_winner_24h": sum(1 for s in summaries if not s.winners),
        }
