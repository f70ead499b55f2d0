"""Participant wallets and the append-only transaction log.

Each wallet keeps three sub-balances (play, main, coins).  Every balance
change writes exactly one Transaction in the same Redis MULTI/EXEC block as
the balance update, so the log and the balance can never disagree.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from app.exceptions import InsufficientFunds, StorageUnavailable
from app.models import Balance, SubBalance, Transaction, TransactionKind
from app.redis_client import reference_key, transactions_key, wallet_key

logger = logging.getLogger(__name__)

# Participant ids may not start with this; it marks internal accounts
RESERVED_PREFIX = "@"

# Account that receives the house cut of every settled round
HOUSE_ACCOUNT = f"{RESERVED_PREFIX}house"

# A single move: (sub-balance, signed amount, kind)
Move = tuple[SubBalance, int, TransactionKind]


def is_reserved_account(account_id: str) -> bool:
    return account_id.startswith(RESERVED_PREFIX)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")


class Ledger(ABC):
    """Storage seam for balances and transactions."""

    @abstractmethod
    async def debit(
        self,
        participant_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        balance: SubBalance = SubBalance.PLAY,
        round_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> int:
        """Take ``amount`` from a sub-balance and return the new value.

        Raises InsufficientFunds (nothing recorded) if the sub-balance is short.
        """

    @abstractmethod
    async def credit(
        self,
        participant_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        balance: SubBalance = SubBalance.MAIN,
        round_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> int:
        """Add ``amount`` to a sub-balance and return the new value."""

    @abstractmethod
    async def get_balance(self, participant_id: str) -> Balance: ...

    @abstractmethod
    async def history(
        self,
        participant_id: str,
        kind: Optional[TransactionKind] = None,
        limit: int = 50,
    ) -> list[Transaction]:
        """Transactions for a participant, newest first."""

    @abstractmethod
    async def convert_coins(self, participant_id: str, coins: int) -> Balance:
        """Move bonus coins 1:1 into the play balance."""

    async def deposit(
        self,
        participant_id: str,
        amount: int,
        balance: SubBalance = SubBalance.MAIN,
    ) -> int:
        return await self.credit(
            participant_id, amount, TransactionKind.DEPOSIT, balance=balance
        )


class RedisLedger(Ledger):
    """Ledger backed by Redis hashes (balances) and lists (transaction logs).

    Writes use WATCH/MULTI/EXEC so concurrent writers in other processes
    cannot cause lost updates; a per-participant lock keeps writers in this
    process from spinning on WatchError.
    """

    MAX_RETRIES = 10

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client
        # participant -> (lock, number of writers holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _locked(self, participant_id: str):
        lock, users = self._locks.get(participant_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[participant_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[participant_id]
            if users == 1:
                del self._locks[participant_id]
            else:
                self._locks[participant_id] = (lock, users - 1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def debit(
        self,
        participant_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        balance: SubBalance = SubBalance.PLAY,
        round_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> int:
        _check_amount(amount)
        after = await self._apply(
            participant_id, [(balance, -amount, kind)], round_id, reference
        )
        return after.get(balance)

    async def credit(
        self,
        participant_id: str,
        amount: int,
        kind: TransactionKind,
        *,
        balance: SubBalance = SubBalance.MAIN,
        round_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> int:
        _check_amount(amount)
        after = await self._apply(
            participant_id, [(balance, amount, kind)], round_id, reference
        )
        return after.get(balance)

    async def convert_coins(self, participant_id: str, coins: int) -> Balance:
        _check_amount(coins)
        return await self._apply(
            participant_id,
            [
                (SubBalance.COINS, -coins, TransactionKind.COIN_CONVERSION),
                (SubBalance.PLAY, coins, TransactionKind.COIN_CONVERSION),
            ],
            None,
            None,
        )

    async def get_balance(self, participant_id: str) -> Balance:
        try:
            raw = await self._redis.hgetall(wallet_key(participant_id))
        except RedisError as e:
            raise StorageUnavailable(f"Could not read wallet {participant_id}") from e
        return _to_balance(raw)

    async def history(
        self,
        participant_id: str,
        kind: Optional[TransactionKind] = None,
        limit: int = 50,
    ) -> list[Transaction]:
        try:
            if kind is None:
                raw = await self._redis.lrange(
                    transactions_key(participant_id), 0, limit - 1
                )
            else:
                raw = await self._redis.lrange(transactions_key(participant_id), 0, -1)
        except RedisError as e:
            raise StorageUnavailable(f"Could not read history for {participant_id}") from e

        entries = [Transaction.model_validate_json(r) for r in raw]
        if kind is not None:
            entries = [t for t in entries if t.kind == kind][:limit]
        return entries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply(
        self,
        participant_id: str,
        moves: list[Move],
        round_id: Optional[str],
        reference: Optional[str],
    ) -> Balance:
        async with self._locked(participant_id):
            for attempt in range(self.MAX_RETRIES):
                try:
                    return await self._try_apply(participant_id, moves, round_id, reference)
                except WatchError:
                    logger.debug(
                        "Wallet %s changed during write, retrying (attempt %d)",
                        participant_id,
                        attempt + 1,
                    )
                except RedisError as e:
                    raise StorageUnavailable(
                        f"Could not update wallet {participant_id}"
                    ) from e
        raise StorageUnavailable(
            f"Wallet {participant_id} is under contention, gave up after {self.MAX_RETRIES} attempts"
        )

    async def _try_apply(
        self,
        participant_id: str,
        moves: list[Move],
        round_id: Optional[str],
        reference: Optional[str],
    ) -> Balance:
        w_key = wallet_key(participant_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            if reference is not None:
                await pipe.watch(w_key, reference_key(reference))
                if await pipe.exists(reference_key(reference)):
                    logger.info(
                        "Ledger reference %s already applied, skipping", reference
                    )
                    raw = await pipe.hgetall(w_key)
                    await pipe.unwatch()
                    return _to_balance(raw)
            else:
                await pipe.watch(w_key)

            current = _to_balance(await pipe.hgetall(w_key))
            after = current.model_copy()
            now = time.time()
            entries: list[Transaction] = []
            for balance, amount, kind in moves:
                before = after.get(balance)
                if before + amount < 0:
                    raise InsufficientFunds(participant_id, balance.value, before, -amount)
                setattr(after, balance.value, before + amount)
                entries.append(
                    Transaction(
                        id=uuid.uuid4().hex,
                        participant_id=participant_id,
                        kind=kind,
                        balance=balance,
                        amount=amount,
                        round_id=round_id,
                        balance_before=before,
                        balance_after=before + amount,
                        reference=reference,
                        timestamp=now,
                    )
                )

            pipe.multi()
            for balance, amount, _kind in moves:
                pipe.hincrby(w_key, balance.value, amount)
            for entry in entries:
                pipe.lpush(transactions_key(participant_id), entry.model_dump_json())
            if reference is not None:
                pipe.set(reference_key(reference), entries[0].id)
            await pipe.execute()

        for entry in entries:
            logger.info(
                "Ledger %s: participant=%s %s %+d -> %d (round=%s)",
                entry.kind.value,
                participant_id,
                entry.balance.value,
                entry.amount,
                entry.balance_after,
                round_id,
            )
        return after


def _to_balance(raw: dict) -> Balance:
    return Balance(
        play=int(raw.get("play", 0)),
        main=int(raw.get("main", 0)),
        coins=int(raw.get("coins", 0)),
    )
