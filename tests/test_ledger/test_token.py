"""Tests for CollateralToken balances, allowances and receive hooks."""

import pytest

from polyflux.exceptions import InsufficientAllowance, InsufficientBalanceError, InvalidAddress
from polyflux.ledger import CollateralToken, Ledger

from conftest import ALICE, BOB, OWNER


class TestMintAndTransfer:
    def test_mint_increases_supply(self, token: CollateralToken) -> None:
        token.mint(ALICE, 1_000)
        assert token.balance_of(ALICE) == 1_000
        assert token.total_supply == 1_000

    def test_transfer_moves_balance(self, token: CollateralToken, ledger: Ledger) -> None:
        token.mint(ALICE, 1_000)
        token.transfer(ALICE, BOB, 400)

        assert token.balance_of(ALICE) == 600
        assert token.balance_of(BOB) == 400
        transfer = ledger.events("Transfer")[-1]
        assert transfer.args == {"sender": ALICE, "recipient": BOB, "amount": 400}

    def test_overdraw_raises_and_changes_nothing(self, token: CollateralToken) -> None:
        token.mint(ALICE, 100)
        with pytest.raises(InsufficientBalanceError):
            token.transfer(ALICE, BOB, 101)
        assert token.balance_of(ALICE) == 100
        assert token.balance_of(BOB) == 0

    def test_transfer_to_zero_address_rejected(self, token: CollateralToken) -> None:
        token.mint(ALICE, 100)
        with pytest.raises(InvalidAddress):
            token.transfer(ALICE, "", 1)


class TestAllowance:
    def test_transfer_from_consumes_allowance(self, token: CollateralToken) -> None:
        token.mint(ALICE, 1_000)
        token.approve(ALICE, OWNER, 300)

        token.transfer_from(OWNER, ALICE, BOB, 200)

        assert token.allowance(ALICE, OWNER) == 100
        assert token.balance_of(BOB) == 200

    def test_transfer_from_above_allowance_rejected(self, token: CollateralToken) -> None:
        token.mint(ALICE, 1_000)
        token.approve(ALICE, OWNER, 50)
        with pytest.raises(InsufficientAllowance):
            token.transfer_from(OWNER, ALICE, BOB, 51)
        assert token.allowance(ALICE, OWNER) == 50


class TestReceiveHook:
    def test_hook_runs_after_credit(self, token: CollateralToken) -> None:
        seen: list[tuple[str, int, int]] = []
        token.mint(ALICE, 500)
        token.set_receive_hook(BOB, lambda sender, amount: seen.append((sender, amount, token.balance_of(BOB))))

        token.transfer(ALICE, BOB, 200)

        assert seen == [(ALICE, 200, 200)]

    def test_failing_hook_reverts_transfer(self, token: CollateralToken) -> None:
        token.mint(ALICE, 500)

        def reject(sender: str, amount: int) -> None:
            raise RuntimeError("recipient refuses funds")

        token.set_receive_hook(BOB, reject)
        with pytest.raises(RuntimeError):
            token.transfer(ALICE, BOB, 200)

        assert token.balance_of(ALICE) == 500
        assert token.balance_of(BOB) == 0

    def test_clearing_hook(self, token: CollateralToken) -> None:
        calls: list[int] = []
        token.mint(ALICE, 500)
        token.set_receive_hook(BOB, lambda sender, amount: calls.append(amount))
        token.set_receive_hook(BOB, None)

        token.transfer(ALICE, BOB, 1)

        assert calls == []
