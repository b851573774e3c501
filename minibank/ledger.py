"""
Ledger Module

The single authority over account balances and account status. Every
operation runs inside the caller's unit of work, enforces the balance
invariants, persists the account row and returns the new balance.
Callers lock the account row (``AccountManager.lock_account``) before
handing the account to the Ledger.
"""

from datetime import datetime, timezone
from typing import Optional

from .accounts import Account, AccountManager, AccountStatus
from .config import resolve_acting_user
from .currency import Money
from .errors import (
    AccountClosed, AccountNotActive, AlreadyClosed, CurrencyMismatch,
    InsufficientBalance, InvalidAmount, NonZeroBalance
)
from .logging_config import get_logger
from .storage import StorageInterface


logger = get_logger("minibank.ledger")


class Ledger:
    """Balance and status mutations for accounts"""

    def __init__(self, storage: StorageInterface, account_manager: AccountManager):
        self.storage = storage
        self.account_manager = account_manager

    def _require_unit_of_work(self) -> None:
        if not self.storage.in_transaction:
            raise RuntimeError("Ledger operations require an open unit of work")

    def _validate_amount(self, account: Account, amount: Money) -> None:
        if not amount.is_positive():
            raise InvalidAmount(f"Amount must be greater than zero, got {amount.to_string()}")
        if amount.currency != account.currency:
            raise CurrencyMismatch(
                f"Amount currency {amount.currency.code} does not match "
                f"account currency {account.currency.code}"
            )

    def _persist(self, account: Account, acting_user: Optional[str]) -> Money:
        account.touch(resolve_acting_user(acting_user))
        self.account_manager.save_account(account)
        return account.balance

    def deposit(self, account: Account, amount: Money, acting_user: Optional[str] = None) -> Money:
        """
        Credit an account

        Raises:
            InvalidAmount: If amount is not positive
            CurrencyMismatch: If amount is in another currency
            AccountClosed: If the account is closed
        """
        self._require_unit_of_work()
        self._validate_amount(account, amount)
        if account.is_closed:
            raise AccountClosed(f"Account {account.account_number} is closed")

        account.balance = account.balance + amount
        logger.debug(f"Deposited {amount.to_string()} to {account.account_number}")
        return self._persist(account, acting_user)

    def withdraw(self, account: Account, amount: Money, acting_user: Optional[str] = None) -> Money:
        """
        Debit an account

        Raises:
            InvalidAmount: If amount is not positive
            CurrencyMismatch: If amount is in another currency
            AccountClosed: If the account is closed
            InsufficientBalance: If amount exceeds the balance
        """
        self._require_unit_of_work()
        self._validate_amount(account, amount)
        if account.is_closed:
            raise AccountClosed(f"Account {account.account_number} is closed")
        if amount > account.balance:
            raise InsufficientBalance(
                f"Insufficient balance in {account.account_number}: "
                f"available {account.balance.to_string()}, requested {amount.to_string()}"
            )

        account.balance = account.balance - amount
        logger.debug(f"Withdrew {amount.to_string()} from {account.account_number}")
        return self._persist(account, acting_user)

    def transfer_out(self, account: Account, amount: Money, acting_user: Optional[str] = None) -> Money:
        """Debit leg of a transfer; the account must be ACTIVE"""
        self._require_unit_of_work()
        self._validate_amount(account, amount)
        self._require_active(account)
        return self.withdraw(account, amount, acting_user)

    def transfer_in(self, account: Account, amount: Money, acting_user: Optional[str] = None) -> Money:
        """Credit leg of a transfer; the account must be ACTIVE"""
        self._require_unit_of_work()
        self._validate_amount(account, amount)
        self._require_active(account)
        return self.deposit(account, amount, acting_user)

    def close(self, account: Account, acting_user: Optional[str] = None) -> Money:
        """
        Close an account with a zero balance

        Raises:
            AlreadyClosed: If the account is already closed
            NonZeroBalance: If the balance is not zero
        """
        self._require_unit_of_work()
        if account.is_closed:
            raise AlreadyClosed(f"Account {account.account_number} is already closed")
        if not account.balance.is_zero():
            raise NonZeroBalance(
                f"Account {account.account_number} still holds {account.balance.to_string()}"
            )

        account.status = AccountStatus.CLOSED
        account.closed_date = datetime.now(timezone.utc).date()
        logger.debug(f"Closed {account.account_number}")
        return self._persist(account, acting_user)

    def _require_active(self, account: Account) -> None:
        if account.is_closed:
            raise AccountClosed(f"Account {account.account_number} is closed")
        if not account.is_active:
            raise AccountNotActive(
                f"Account {account.account_number} is {account.status.value}"
            )
