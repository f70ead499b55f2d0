"""Tests for pot settlement."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from app.exceptions import StorageUnavailable
from app.ledger import HOUSE_ACCOUNT
from app.models import SubBalance, TransactionKind
from app.settlement import Settlement, compute_payout

RATE = Decimal("0.20")


# ── compute_payout ───────────────────────────────────────────────────

class TestComputePayout:
    @pytest.mark.parametrize(
        "pot, winners, prize, house",
        [
            (30, ["a"], 24, 6),
            (30, ["a", "b"], 12, 6),
            (31, ["a", "b"], 12, 7),
            (100, ["a", "b", "c"], 26, 22),
            (30, [], 0, 30),
            (0, ["a"], 0, 0),
        ],
    )
    def test_scenarios(self, pot, winners, prize, house):
        payout = compute_payout(pot, RATE, winners)
        assert payout.prize_per_winner == prize
        assert payout.house_take == house

    def test_remainder_goes_to_house(self):
        payout = compute_payout(31, RATE, ["a", "b"])
        assert payout.house_cut == 6
        assert payout.remainder == 1
        assert payout.house_take == payout.house_cut + payout.remainder

    def test_house_cut_rounds_down(self):
        # 0.2 * 7 = 1.4
        payout = compute_payout(7, RATE, ["a"])
        assert payout.house_cut == 1
        assert payout.prize_per_winner == 6

    def test_identity_holds(self):
        for pot in range(0, 200, 7):
            for n in range(0, 6):
                winners = [f"p{i}" for i in range(n)]
                for rate in ("0", "0.15", "0.2", "0.333", "1"):
                    payout = compute_payout(pot, Decimal(rate), winners)
                    assert payout.house_take + payout.prize_per_winner * n == pot
                    assert payout.prize_per_winner >= 0
                    assert payout.house_take >= 0

    def test_zero_rate_full_pot_to_winners(self):
        payout = compute_payout(30, Decimal(0), ["a", "b", "c"])
        assert payout.prize_per_winner == 10
        assert payout.house_take == 0

    @pytest.mark.parametrize("rate", ["-0.1", "1.5"])
    def test_rejects_bad_rate(self, rate):
        with pytest.raises(ValueError):
            compute_payout(30, Decimal(rate), ["a"])

    def test_rejects_negative_pot(self):
        with pytest.raises(ValueError):
            compute_payout(-1, RATE, ["a"])

    def test_to_dict(self):
        d = compute_payout(30, RATE, ["a", "b"]).to_dict()
        assert d["total_prizes"] == 24
        assert d["house_take"] == 6


# ── Settlement ───────────────────────────────────────────────────────

class TestSettlement:
    async def test_credits_winners_and_house(self, ledger):
        settlement = Settlement(ledger)
        payout = await settlement.settle("R1", 30, RATE, ["a", "b"])

        assert payout.prize_per_winner == 12
        for pid in ("a", "b"):
            balance = await ledger.get_balance(pid)
            assert balance.main == 12
            assert balance.play == 0
            (txn,) = await ledger.history(pid)
            assert txn.kind == TransactionKind.PRIZE_CREDIT
            assert txn.round_id == "R1"
            assert txn.balance == SubBalance.MAIN

        house = await ledger.history(HOUSE_ACCOUNT)
        assert [(t.kind, t.amount) for t in house] == [(TransactionKind.HOUSE_CUT, 6)]

    async def test_no_winners_house_takes_pot(self, ledger):
        payout = await Settlement(ledger).settle("R2", 30, RATE, [])
        assert payout.house_take == 30
        assert (await ledger.get_balance(HOUSE_ACCOUNT)).main == 30

    async def test_settle_twice_does_not_double_credit(self, ledger):
        settlement = Settlement(ledger)
        first = await settlement.settle("R3", 30, RATE, ["a"])
        second = await settlement.settle("R3", 30, RATE, ["a"])

        assert first is second
        assert settlement.is_settled("R3")
        assert (await ledger.get_balance("a")).main == 24
        assert (await ledger.get_balance(HOUSE_ACCOUNT)).main == 6

    async def test_forget_keeps_ledger_idempotent(self, ledger):
        settlement = Settlement(ledger)
        await settlement.settle("R6", 30, RATE, ["a"])

        settlement.forget("R6")
        settlement.forget("never-settled")
        assert not settlement.is_settled("R6")

        await settlement.settle("R6", 30, RATE, ["a"])
        assert (await ledger.get_balance("a")).main == 24
        assert (await ledger.get_balance(HOUSE_ACCOUNT)).main == 6

    async def test_fresh_settlement_object_still_idempotent(self, ledger):
        await Settlement(ledger).settle("R4", 30, RATE, ["a"])
        await Settlement(ledger).settle("R4", 30, RATE, ["a"])
        assert (await ledger.get_balance("a")).main == 24
        assert len(await ledger.history(HOUSE_ACCOUNT)) == 1

    async def test_partial_failure_retry_pays_everyone_once(self, ledger):
        settlement = Settlement(ledger)
        real_credit = ledger.credit
        calls = {"n": 0}

        async def flaky_credit(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StorageUnavailable("down")
            return await real_credit(*args, **kwargs)

        with patch.object(ledger, "credit", side_effect=flaky_credit):
            with pytest.raises(StorageUnavailable):
                await settlement.settle("R5", 30, RATE, ["a", "b"])
        assert not settlement.is_settled("R5")

        await settlement.settle("R5", 30, RATE, ["a", "b"])
        assert (await ledger.get_balance("a")).main == 12
        assert (await ledger.get_balance("b")).main == 12
        assert (await ledger.get_balance(HOUSE_ACCOUNT)).main == 6
        assert len(await ledger.history("a")) == 1

    async def test_duplicate_winner_rejected(self, ledger):
        with pytest.raises(ValueError):
            await Settlement(ledger).settle("R6", 30, RATE, ["a", "a"])

    async def test_zero_pot_makes_no_credits(self):
        ledger = AsyncMock()
        await Settlement(ledger).settle("R7", 0, RATE, ["a"])
        ledger.credit.assert_not_called()
