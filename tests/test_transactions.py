"""
Tests for transaction recording and history
"""

import pytest
import uuid
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from minibank.accounts import Account, AccountManager, AccountStatus
from minibank.audit import AuditTrail, AuditEventType
from minibank.currency import Money, Currency
from minibank.errors import ConsistencyError, TransactionNotFound
from minibank.ledger import Ledger
from minibank.sequences import SequenceGenerator
from minibank.storage import InMemoryStorage
from minibank.transactions import (
    TransactionRecorder, TransactionType, TransactionChannel, expected_balance_after
)


def idr(amount):
    return Money(Decimal(str(amount)), Currency.IDR)


class TestTransactionType:
    """Test the debit/credit classification"""

    def test_debit_types(self):
        assert TransactionType.WITHDRAWAL.is_debit
        assert TransactionType.TRANSFER_OUT.is_debit
        assert TransactionType.FEE.is_debit

    def test_credit_types(self):
        assert not TransactionType.DEPOSIT.is_debit
        assert not TransactionType.TRANSFER_IN.is_debit

    def test_expected_balance_after(self):
        assert expected_balance_after(TransactionType.DEPOSIT, idr(100), idr(25)) == idr(125)
        assert expected_balance_after(TransactionType.WITHDRAWAL, idr(100), idr(25)) == idr(75)


class TestTransactionRecorder:
    """Test pairing of ledger mutations with transaction rows"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.sequences = SequenceGenerator(self.storage, self.audit)
        self.accounts = AccountManager(self.storage)
        self.ledger = Ledger(self.storage, self.accounts)
        self.recorder = TransactionRecorder(self.storage, self.sequences, self.audit)

        now = datetime.now(timezone.utc)
        self.account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number="ACC0000001",
            customer_id="customer_1",
            product_id="product_1",
            account_name="Siti Rahma",
            balance=idr(0),
            status=AccountStatus.ACTIVE,
        )
        self.accounts.save_account(self.account)

    def post(self, transaction_type, amount, description="test"):
        with self.storage.atomic():
            account = self.accounts.lock_account(self.account.id)
            before = account.balance
            if transaction_type.is_debit:
                self.ledger.withdraw(account, amount, "teller1")
            else:
                self.ledger.deposit(account, amount, "teller1")
            return self.recorder.record(
                account, transaction_type, amount, before, description,
                TransactionChannel.TELLER, acting_user="teller1"
            )

    def test_record_deposit(self):
        """A deposit row carries the before/after balances and a TXN number"""
        transaction = self.post(TransactionType.DEPOSIT, idr(100))

        assert transaction.transaction_number == "TXN0000001"
        assert transaction.balance_before == idr(0)
        assert transaction.balance_after == idr(100)
        assert transaction.created_by == "teller1"
        assert transaction.channel == TransactionChannel.TELLER

        stored = self.recorder.get_transaction(transaction.id)
        assert stored.amount == idr(100)
        assert stored.balance_after == self.accounts.get_account(self.account.id).balance

    def test_record_is_audited(self):
        transaction = self.post(TransactionType.DEPOSIT, idr(100))
        events = self.audit.get_events_for_entity("transaction", transaction.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.TRANSACTION_POSTED
        assert events[0].metadata["balance_after"] == "100.00"

    def test_balance_mismatch_raises_consistency_error(self):
        """A row that does not match the account balance is never written"""
        with pytest.raises(ConsistencyError):
            with self.storage.atomic():
                account = self.accounts.lock_account(self.account.id)
                self.ledger.deposit(account, idr(100))
                # Claimed before-balance is wrong
                self.recorder.record(
                    account, TransactionType.DEPOSIT, idr(100), idr(50),
                    "bad", TransactionChannel.TELLER
                )

        assert self.storage.count("transactions") == 0
        assert self.accounts.get_account(self.account.id).balance == idr(0)

    def test_record_requires_unit_of_work(self):
        with pytest.raises(RuntimeError):
            self.recorder.record(
                self.account, TransactionType.DEPOSIT, idr(1), idr(0),
                "outside", TransactionChannel.TELLER
            )

    def test_get_by_number(self):
        self.post(TransactionType.DEPOSIT, idr(100))
        second = self.post(TransactionType.WITHDRAWAL, idr(30))

        found = self.recorder.get_by_number("TXN0000002")
        assert found.id == second.id
        assert found.transaction_type == TransactionType.WITHDRAWAL
        assert found.balance_after == idr(70)

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFound):
            self.recorder.get_transaction("missing")
        with pytest.raises(TransactionNotFound):
            self.recorder.get_by_number("TXN9999999")

    def test_account_history(self):
        """History is oldest first and can be filtered by type and limited"""
        self.post(TransactionType.DEPOSIT, idr(100))
        self.post(TransactionType.WITHDRAWAL, idr(30))
        self.post(TransactionType.DEPOSIT, idr(5))

        history = self.recorder.get_account_transactions(self.account.id)
        assert [t.transaction_number for t in history] == ["TXN0000001", "TXN0000002", "TXN0000003"]
        assert [t.balance_after for t in history] == [idr(100), idr(70), idr(75)]

        deposits = self.recorder.get_account_transactions(
            self.account.id, transaction_types=[TransactionType.DEPOSIT]
        )
        assert len(deposits) == 2

        assert len(self.recorder.get_account_transactions(self.account.id, limit=1)) == 1

    def test_history_date_filters(self):
        self.post(TransactionType.DEPOSIT, idr(100))
        now = datetime.now(timezone.utc)

        assert len(self.recorder.get_account_transactions(
            self.account.id, start_date=now - timedelta(minutes=5))) == 1
        assert self.recorder.get_account_transactions(
            self.account.id, start_date=now + timedelta(minutes=5)) == []
        assert self.recorder.get_account_transactions(
            self.account.id, end_date=now - timedelta(minutes=5)) == []

    def test_history_of_unknown_account_is_empty(self):
        assert self.recorder.get_account_transactions("missing") == []
