"""Card-number reservations for one room's registration phase."""

from __future__ import annotations

from typing import NamedTuple, Optional

from app.exceptions import CardOutOfRange, CardTaken


class Reservation(NamedTuple):
    participant_id: str
    card_number: int
    released: Optional[int]  # card given up to make this reservation, if any


class CardPool:
    """Tracks which of the numbered cards 1..size are reserved, and by whom.

    A card has at most one owner and an owner holds at most one card.  No
    method awaits, so calls are atomic with respect to each other on the
    event loop.
    """

    def __init__(self, size: int = 100) -> None:
        if size < 1:
            raise ValueError("Card pool needs at least one card")
        self.size = size
        self._owner_by_card: dict[int, str] = {}
        self._card_by_owner: dict[str, int] = {}

    def reserve(self, participant_id: str, card_number: int) -> Reservation:
        """Reserve ``card_number`` for a participant.

        A participant already holding another card swaps to the new one; if
        the new card is unavailable the old reservation is kept.
        """
        if not 1 <= card_number <= self.size:
            raise CardOutOfRange(card_number, self.size)

        owner = self._owner_by_card.get(card_number)
        if owner == participant_id:
            return Reservation(participant_id, card_number, None)
        if owner is not None:
            raise CardTaken(card_number)

        previous = self._card_by_owner.pop(participant_id, None)
        if previous is not None:
            del self._owner_by_card[previous]

        self._owner_by_card[card_number] = participant_id
        self._card_by_owner[participant_id] = card_number
        return Reservation(participant_id, card_number, previous)

    def release(self, participant_id: str) -> Optional[int]:
        """Free the participant's card.  Returns the card number, or None."""
        card_number = self._card_by_owner.pop(participant_id, None)
        if card_number is not None:
            del self._owner_by_card[card_number]
        return card_number

    def holder(self, card_number: int) -> Optional[str]:
        return self._owner_by_card.get(card_number)

    def card_of(self, participant_id: str) -> Optional[int]:
        return self._card_by_owner.get(participant_id)

    def available(self) -> list[int]:
        return [n for n in range(1, self.size + 1) if n not in self._owner_by_card]

    def taken(self) -> list[int]:
        return sorted(self._owner_by_card)

    def clear(self) -> None:
        self._owner_by_card.clear()
        self._card_by_owner.clear()

    def __len__(self) -> int:
        return len(self._owner_by_card)
