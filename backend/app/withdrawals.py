"""Withdrawal requests: main balance held at request time, paid out on approval.

A request debits the participant's main balance straight away, so the
same money cannot be staked or withdrawn twice while an operator looks at
it.  Approval only marks the request; denial marks it and credits the held
amount back.  Both ledger moves carry references derived from the
withdrawal id, so a retried request or denial never moves money twice.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.config import WITHDRAWAL_MAX, WITHDRAWAL_MIN
from app.exceptions import (
    InvalidWithdrawal,
    StorageUnavailable,
    UnknownWithdrawal,
    WithdrawalNotPending,
)
from app.ledger import Ledger
from app.models import SubBalance, TransactionKind, Withdrawal, WithdrawalStatus
from app.redis_client import WITHDRAWALS_KEY, withdrawal_key

logger = logging.getLogger(__name__)


class WithdrawalDesk:
    MAX_RETRIES = 10

    def __init__(
        self,
        client: redis.Redis,
        ledger: Ledger,
        *,
        minimum: int = WITHDRAWAL_MIN,
        maximum: int = WITHDRAWAL_MAX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self._ledger = ledger
        self.minimum = minimum
        self.maximum = maximum
        self._clock = clock

    # ------------------------------------------------------------------
    # Participant side
    # ------------------------------------------------------------------

    async def request(self, participant_id: str, amount: int, destination: str) -> Withdrawal:
        """Hold ``amount`` of main balance and queue it for approval.

        Raises InsufficientFunds (nothing held) if main balance is short.
        """
        if not self.minimum <= amount <= self.maximum:
            raise InvalidWithdrawal(
                f"Withdrawal must be between {self.minimum} and {self.maximum}, got {amount}"
            )
        withdrawal = Withdrawal(
            id=uuid.uuid4().hex,
            participant_id=participant_id,
            amount=amount,
            destination=destination.strip(),
            requested_at=self._clock(),
        )
        await self._ledger.debit(
            participant_id,
            amount,
            TransactionKind.WITHDRAWAL,
            balance=SubBalance.MAIN,
            reference=f"withdrawal:{withdrawal.id}",
        )
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(withdrawal_key(withdrawal.id), withdrawal.model_dump_json())
                pipe.zadd(WITHDRAWALS_KEY, {withdrawal.id: withdrawal.requested_at})
                await pipe.execute()
        except RedisError as e:
            # Without a record nobody could ever approve it; give the money back
            await self._refund(withdrawal)
            raise StorageUnavailable(f"Could not record withdrawal for {participant_id}") from e

        logger.info(
            "Withdrawal %s requested: participant=%s amount=%d",
            withdrawal.id,
            participant_id,
            amount,
        )
        return withdrawal

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------

    async def get(self, withdrawal_id: str) -> Withdrawal:
        try:
            raw = await self._redis.get(withdrawal_key(withdrawal_id))
        except RedisError as e:
            raise StorageUnavailable(f"Could not load withdrawal {withdrawal_id}") from e
        if raw is None:
            raise UnknownWithdrawal(withdrawal_id)
        return Withdrawal.model_validate_json(raw)

    async def list_withdrawals(
        self, status: Optional[WithdrawalStatus] = None, limit: int = 50
    ) -> list[Withdrawal]:
        """Newest requests first, optionally only those in ``status``."""
        try:
            ids = await self._redis.zrevrange(WITHDRAWALS_KEY, 0, -1)
            withdrawals = []
            for withdrawal_id in ids:
                raw = await self._redis.get(withdrawal_key(withdrawal_id))
                if raw is None:
                    continue
                withdrawal = Withdrawal.model_validate_json(raw)
                if status is None or withdrawal.status is status:
                    withdrawals.append(withdrawal)
                    if len(withdrawals) >= limit:
                        break
        except RedisError as e:
            raise StorageUnavailable("Could not list withdrawals") from e
        return withdrawals

    async def approve(self, withdrawal_id: str) -> Withdrawal:
        """Mark a pending withdrawal as paid out.  The funds are already held."""
        return await self._decide(withdrawal_id, WithdrawalStatus.APPROVED)

    async def deny(self, withdrawal_id: str) -> Withdrawal:
        """Reject a pending withdrawal and return the held amount to main balance.

        Denying an already denied withdrawal re-issues the refund, which the
        ledger ignores if it went through the first time.
        """
        withdrawal = await self._decide(withdrawal_id, WithdrawalStatus.DENIED)
        await self._refund(withdrawal)
        return withdrawal

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refund(self, withdrawal: Withdrawal) -> None:
        await self._ledger.credit(
            withdrawal.participant_id,
            withdrawal.amount,
            TransactionKind.WITHDRAWAL_REFUND,
            balance=SubBalance.MAIN,
            reference=f"withdrawal:{withdrawal.id}:refund",
        )

    async def _decide(self, withdrawal_id: str, status: WithdrawalStatus) -> Withdrawal:
        key = withdrawal_key(withdrawal_id)
        try:
            for attempt in range(self.MAX_RETRIES):
                try:
                    async with self._redis.pipeline(transaction=True) as pipe:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise UnknownWithdrawal(withdrawal_id)
                        withdrawal = Withdrawal.model_validate_json(raw)
                        if withdrawal.status is status:
                            await pipe.unwatch()
                            return withdrawal
                        if withdrawal.status is not WithdrawalStatus.PENDING:
                            raise WithdrawalNotPending(withdrawal_id, withdrawal.status.value)

                        decided = withdrawal.model_copy(
                            update={"status": status, "decided_at": self._clock()}
                        )
                        pipe.multi()
                        pipe.set(key, decided.model_dump_json())
                        await pipe.execute()
                except WatchError:
                    logger.debug(
                        "Withdrawal %s changed during update, retrying (attempt %d)",
                        withdrawal_id,
                        attempt + 1,
                    )
                    continue
                logger.info(
                    "Withdrawal %s %s: participant=%s amount=%d",
                    withdrawal_id,
                    status.value,
                    decided.participant_id,
                    decided.amount,
                )
                return decided
        except RedisError as e:
            raise StorageUnavailable(f"Could not update withdrawal {withdrawal_id}") from e
        raise StorageUnavailable(
            f"Withdrawal {withdrawal_id} is under contention, gave up after {self.MAX_RETRIES} attempts"
        )
