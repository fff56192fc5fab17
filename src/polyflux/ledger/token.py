"""Collateral token held in custody by the derivatives engine.

A minimal fungible token (mock USDC, 6 decimals). Transfers that would
overdraw raise InsufficientBalanceError and, because the token is a ledger
participant, abort the enclosing transaction without partial payment.

Receive hooks let an account run code when it is credited. They model
callee-controlled control flow (ERC-777 style callbacks) and are how the
reentrancy guard is exercised.
"""

from __future__ import annotations

from collections.abc import Callable

from polyflux.exceptions import InsufficientAllowance, InsufficientBalanceError
from polyflux.ledger.runtime import (
    Ledger,
    Snapshotable,
    require_address,
    require_amount,
    synchronized,
    transactional,
)
from polyflux.logging import get_logger

logger = get_logger(__name__)

ReceiveHook = Callable[[str, int], None]  # (sender, amount)


class CollateralToken(Snapshotable):
    """Ledger-backed fungible token with balances and allowances.

    Args:
        ledger: The shared transactional runtime.
        symbol: Display symbol.
        decimals: Fixed-point decimals (6 matches the 1e6 amount scale).
    """

    _state_attrs = ("_balances", "_allowances", "_total_supply")

    def __init__(self, ledger: Ledger, symbol: str = "USDC", decimals: int = 6) -> None:
        self._ledger = ledger
        self.symbol = symbol
        self.decimals = decimals
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._total_supply = 0
        self._receive_hooks: dict[str, ReceiveHook] = {}
        ledger.register(self)

    # -- Reads ---------------------------------------------------------------

    @synchronized
    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    @synchronized
    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    @property
    def total_supply(self) -> int:
        return self._total_supply

    # -- Writes --------------------------------------------------------------

    @transactional
    def mint(self, to: str, amount: int) -> None:
        """Mint test collateral (mock token: unrestricted)."""
        require_address(to)
        require_amount(amount)
        self._balances[to] = self.balance_of(to) + amount
        self._total_supply += amount
        self._ledger.emit("Transfer", sender="", recipient=to, amount=amount)

    @transactional
    def approve(self, owner: str, spender: str, amount: int) -> None:
        require_address(spender)
        require_amount(amount)
        self._allowances[(owner, spender)] = amount
        self._ledger.emit("Approval", owner=owner, spender=spender, amount=amount)

    @transactional
    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move ``amount`` from sender to recipient, then run the receive hook."""
        self._move(sender, recipient, amount)
        self._notify(recipient, sender, amount)

    @transactional
    def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        """Move tokens on behalf of ``owner`` using the spender's allowance."""
        require_amount(amount)
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise InsufficientAllowance(
                f"Allowance {allowed} of {spender} over {owner} below {amount}"
            )
        self._allowances[(owner, spender)] = allowed - amount
        self._move(owner, recipient, amount)
        self._notify(recipient, owner, amount)

    def set_receive_hook(self, account: str, hook: ReceiveHook | None) -> None:
        """Register (or clear, with None) code to run when ``account`` is credited."""
        if hook is None:
            self._receive_hooks.pop(account, None)
        else:
            self._receive_hooks[account] = hook

    # -- Internals -----------------------------------------------------------

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        require_address(recipient)
        require_amount(amount)
        balance = self.balance_of(sender)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Balance {balance} of {sender} below transfer amount {amount}"
            )
        self._balances[sender] = balance - amount
        self._balances[recipient] = self.balance_of(recipient) + amount
        self._ledger.emit("Transfer", sender=sender, recipient=recipient, amount=amount)

    def _notify(self, recipient: str, sender: str, amount: int) -> None:
        hook = self._receive_hooks.get(recipient)
        if hook is not None:
            logger.debug("receive_hook_invoked", recipient=recipient, amount=amount)
            hook(sender, amount)
