"""Pydantic models for wallets, transactions, round summaries and REST payloads."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubBalance(str, Enum):
    PLAY = "play"  # spendable on stakes
    MAIN = "main"  # withdrawable
    COINS = "coins"  # bonus coins, convertible into play


class TransactionKind(str, Enum):
    STAKE_DEBIT = "stake_debit"
    PRIZE_CREDIT = "prize_credit"
    HOUSE_CUT = "house_cut"
    STAKE_REFUND = "stake_refund"
    DEPOSIT = "deposit"
    COIN_CONVERSION = "coin_conversion"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REFUND = "withdrawal_refund"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


# --- Ledger records ---


class Balance(BaseModel):
    play: int = 0
    main: int = 0
    coins: int = 0

    def get(self, balance: SubBalance) -> int:
        return getattr(self, balance.value)


class Transaction(BaseModel):
    """Immutable ledger entry; ``amount`` is signed."""

    model_config = {"frozen": True}

    id: str
    participant_id: str
    kind: TransactionKind
    balance: SubBalance
    amount: int
    round_id: Optional[str] = None
    balance_before: int
    balance_after: int
    reference: Optional[str] = None
    timestamp: float


# --- Round results ---


class RoundWinner(BaseModel):
    participant_id: str
    card_number: int
    prize: int


class RoundSummary(BaseModel):
    """Persisted once per completed round, for reporting."""

    round_id: str
    stake: int
    called_numbers: list[int]
    winners: list[RoundWinner]
    pot: int
    house_take: int
    participant_count: int = 0
    started_at: float
    finished_at: float


# --- Withdrawals ---


class Withdrawal(BaseModel):
    """A request to pay out main balance.  The amount is held from the moment
    of the request; a denial returns it."""

    id: str
    participant_id: str
    amount: int
    destination: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    requested_at: float
    decided_at: Optional[float] = None


# --- Request models ---


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0, le=1_000_000)
    balance: SubBalance = SubBalance.MAIN


class ConvertCoinsRequest(BaseModel):
    coins: int = Field(..., gt=0)


class WithdrawRequest(BaseModel):
    amount: int = Field(..., gt=0)
    destination: str = Field(..., min_length=1, max_length=200)


# --- Response models ---


class WalletResponse(BaseModel):
    participant_id: str
    play: int
    main: int
    coins: int


class HistoryResponse(BaseModel):
    participant_id: str
    transactions: list[Transaction]


class WithdrawalsResponse(BaseModel):
    withdrawals: list[Withdrawal]


class ErrorResponse(BaseModel):
    detail: str
    code: str
