"""Domain errors for rooms, cards, claims, the ledger and withdrawals.

Every error carries a stable ``code`` so the transport layer can hand a
specific denial reason back to the participant who caused it.
"""

from __future__ import annotations


class BingoError(Exception):
    """Base class for all domain errors."""

    code = "BINGO_ERROR"


# ---------- Ledger ----------


class InsufficientFunds(BingoError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, participant_id: str, balance: str, available: int, required: int) -> None:
        self.participant_id = participant_id
        self.balance = balance
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient {balance} balance: need {required}, have {available}"
        )


class StorageUnavailable(BingoError):
    """The ledger or round store could not complete a write or read."""

    code = "STORAGE_UNAVAILABLE"


# ---------- Cards ----------


class CardUnavailable(BingoError):
    code = "CARD_UNAVAILABLE"

    def __init__(self, card_number: int, message: str) -> None:
        self.card_number = card_number
        super().__init__(message)


class CardTaken(CardUnavailable):
    code = "CARD_TAKEN"

    def __init__(self, card_number: int) -> None:
        super().__init__(card_number, f"Card {card_number} is already taken")


class CardOutOfRange(CardUnavailable):
    code = "CARD_OUT_OF_RANGE"

    def __init__(self, card_number: int, pool_size: int) -> None:
        self.pool_size = pool_size
        super().__init__(
            card_number, f"Card {card_number} is outside 1..{pool_size}"
        )


# ---------- Room ----------


class InvalidPhaseAction(BingoError):
    code = "INVALID_PHASE"

    def __init__(self, action: str, phase: str) -> None:
        self.action = action
        self.phase = phase
        super().__init__(f"Cannot {action} while room is in {phase}")


class InvalidClaim(BingoError):
    code = "INVALID_CLAIM"


class UnknownRoom(BingoError):
    code = "NO_ROOM"

    def __init__(self, stake: int) -> None:
        self.stake = stake
        super().__init__(f"No room for stake {stake}")


class NotInRoom(BingoError):
    code = "NOT_IN_ROOM"

    def __init__(self, participant_id: str) -> None:
        self.participant_id = participant_id
        super().__init__(f"Participant {participant_id} has not joined a room")


# ---------- Withdrawals ----------


class InvalidWithdrawal(BingoError):
    code = "INVALID_WITHDRAWAL"


class UnknownWithdrawal(BingoError):
    code = "WITHDRAWAL_NOT_FOUND"

    def __init__(self, withdrawal_id: str) -> None:
        self.withdrawal_id = withdrawal_id
        super().__init__(f"No withdrawal {withdrawal_id}")


class WithdrawalNotPending(BingoError):
    code = "ALREADY_PROCESSED"

    def __init__(self, withdrawal_id: str, status: str) -> None:
        self.withdrawal_id = withdrawal_id
        self.status = status
        super().__init__(f"Withdrawal {withdrawal_id} is already {status}")
