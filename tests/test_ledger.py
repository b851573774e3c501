"""
Tests for the Ledger: balance and status mutations
"""

import pytest
import uuid
from decimal import Decimal
from datetime import datetime, timezone

from minibank.accounts import Account, AccountManager, AccountStatus
from minibank.currency import Money, Currency
from minibank.errors import (
    AccountClosed, AccountNotActive, AlreadyClosed, CurrencyMismatch,
    InsufficientBalance, InvalidAmount, NonZeroBalance
)
from minibank.ledger import Ledger
from minibank.storage import InMemoryStorage


def idr(amount):
    return Money(Decimal(str(amount)), Currency.IDR)


class TestLedger:
    """Test Ledger operations against stored accounts"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.accounts = AccountManager(self.storage)
        self.ledger = Ledger(self.storage, self.accounts)

    def make_account(self, balance="0", status=AccountStatus.ACTIVE):
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number="ACC0000001",
            customer_id="customer_1",
            product_id="product_1",
            account_name="Test Account",
            balance=idr(balance),
            status=status,
        )
        self.accounts.save_account(account)
        return account

    def test_requires_unit_of_work(self):
        """Ledger mutations outside a unit of work are refused"""
        account = self.make_account()
        with pytest.raises(RuntimeError):
            self.ledger.deposit(account, idr(100))

    def test_deposit(self):
        account = self.make_account("100")
        with self.storage.atomic():
            balance = self.ledger.deposit(account, idr("50.25"), acting_user="teller1")

        assert balance == idr("150.25")
        stored = self.accounts.get_account(account.id)
        assert stored.balance == idr("150.25")
        assert stored.updated_by == "teller1"

    def test_deposit_defaults_acting_user(self):
        account = self.make_account()
        with self.storage.atomic():
            self.ledger.deposit(account, idr(10))
        assert self.accounts.get_account(account.id).updated_by == "SYSTEM"

    def test_deposit_to_inactive_account_is_allowed(self):
        """Initial deposits land on accounts that are still awaiting approval"""
        account = self.make_account(status=AccountStatus.INACTIVE)
        with self.storage.atomic():
            assert self.ledger.deposit(account, idr(50000)) == idr(50000)

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_non_positive_amounts_rejected(self, amount):
        account = self.make_account("100")
        with self.storage.atomic():
            with pytest.raises(InvalidAmount):
                self.ledger.deposit(account, idr(amount))
            with pytest.raises(InvalidAmount):
                self.ledger.withdraw(account, idr(amount))

    def test_currency_mismatch(self):
        account = self.make_account("100")
        with self.storage.atomic():
            with pytest.raises(CurrencyMismatch):
                self.ledger.deposit(account, Money(Decimal("10"), Currency.USD))

    def test_withdraw(self):
        account = self.make_account("100")
        with self.storage.atomic():
            assert self.ledger.withdraw(account, idr(100)) == idr(0)
        assert self.accounts.get_account(account.id).balance.is_zero()

    def test_withdraw_insufficient_balance(self):
        """Overdrafts are refused and the balance is unchanged"""
        account = self.make_account("50")
        with pytest.raises(InsufficientBalance):
            with self.storage.atomic():
                self.ledger.withdraw(account, idr(100))
        assert self.accounts.get_account(account.id).balance == idr(50)

    def test_closed_account_rejects_mutations(self):
        account = self.make_account("0", status=AccountStatus.CLOSED)
        with self.storage.atomic():
            with pytest.raises(AccountClosed):
                self.ledger.deposit(account, idr(10))
            with pytest.raises(AccountClosed):
                self.ledger.withdraw(account, idr(10))
            with pytest.raises(AccountClosed):
                self.ledger.transfer_out(account, idr(10))

    def test_transfer_legs_require_active_account(self):
        account = self.make_account("100", status=AccountStatus.INACTIVE)
        with self.storage.atomic():
            with pytest.raises(AccountNotActive):
                self.ledger.transfer_out(account, idr(10))
            with pytest.raises(AccountNotActive):
                self.ledger.transfer_in(account, idr(10))

    def test_transfer_legs_validate_amount_before_status(self):
        """A bad amount is reported even when the account is not active"""
        account = self.make_account("100", status=AccountStatus.INACTIVE)
        with self.storage.atomic():
            with pytest.raises(InvalidAmount):
                self.ledger.transfer_out(account, idr(0))
            with pytest.raises(InvalidAmount):
                self.ledger.transfer_in(account, idr(-5))
            with pytest.raises(CurrencyMismatch):
                self.ledger.transfer_out(account, Money(Decimal("10"), Currency.USD))

    def test_transfer_legs(self):
        source = self.make_account("500")
        destination = self.make_account("0")
        with self.storage.atomic():
            assert self.ledger.transfer_out(source, idr(200)) == idr(300)
            assert self.ledger.transfer_in(destination, idr(200)) == idr(200)

    def test_close(self):
        account = self.make_account("0")
        with self.storage.atomic():
            self.ledger.close(account, acting_user="supervisor1")

        stored = self.accounts.get_account(account.id)
        assert stored.status == AccountStatus.CLOSED
        assert stored.closed_date is not None
        assert stored.updated_by == "supervisor1"

    def test_close_with_balance(self):
        account = self.make_account("0.01")
        with self.storage.atomic():
            with pytest.raises(NonZeroBalance):
                self.ledger.close(account)

    def test_close_twice(self):
        account = self.make_account("0", status=AccountStatus.CLOSED)
        with self.storage.atomic():
            with pytest.raises(AlreadyClosed):
                self.ledger.close(account)

    def test_rollback_reverts_balance(self):
        """A failure later in the unit of work reverts the balance change"""
        account = self.make_account("100")
        with pytest.raises(ValueError):
            with self.storage.atomic():
                self.ledger.deposit(account, idr(50))
                raise ValueError("downstream failure")
        assert self.accounts.get_account(account.id).balance == idr(100)
