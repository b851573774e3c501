"""
Transaction Recording Module

Every balance mutation is paired 1:1 with an immutable Transaction row that
captures the balance before and after the mutation. The recorder checks the
debit/credit rule against the account's actual post-mutation balance and
refuses to write anything that does not add up.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .accounts import Account
from .audit import AuditTrail, AuditEventType
from .config import resolve_acting_user
from .currency import Money, Currency
from .errors import ConsistencyError, TransactionNotFound
from .logging_config import get_logger, log_action
from .sequences import SequenceGenerator, SequenceName
from .storage import StorageInterface, StorageRecord


logger = get_logger("minibank.transactions")


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"            # Credit
    WITHDRAWAL = "withdrawal"      # Debit
    TRANSFER_IN = "transfer_in"    # Credit
    TRANSFER_OUT = "transfer_out"  # Debit
    FEE = "fee"                    # Debit

    @property
    def is_debit(self) -> bool:
        return self in DEBIT_TYPES


DEBIT_TYPES = frozenset({TransactionType.WITHDRAWAL, TransactionType.TRANSFER_OUT, TransactionType.FEE})


class TransactionChannel(Enum):
    """Channels through which transactions can originate"""
    TELLER = "teller"
    ATM = "atm"
    ONLINE = "online"
    MOBILE = "mobile"
    TRANSFER = "transfer"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable record of one balance mutation
    """
    account_id: str
    transaction_number: str
    transaction_type: TransactionType
    amount: Money
    balance_before: Money
    balance_after: Money
    description: str
    channel: TransactionChannel
    transaction_date: datetime
    processed_date: datetime
    created_by: str
    reference_number: Optional[str] = None
    destination_account_id: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_debit(self) -> bool:
        return self.transaction_type.is_debit


def expected_balance_after(transaction_type: TransactionType, balance_before: Money, amount: Money) -> Money:
    """Apply the debit/credit rule"""
    if transaction_type.is_debit:
        return balance_before - amount
    return balance_before + amount


class TransactionRecorder:
    """
    Writes Transaction rows for balance mutations already applied by the Ledger
    """

    def __init__(self, storage: StorageInterface, sequence_generator: SequenceGenerator,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.sequences = sequence_generator
        self.audit_trail = audit_trail
        self.table_name = "transactions"

    def record(
        self,
        account: Account,
        transaction_type: TransactionType,
        amount: Money,
        balance_before: Money,
        description: str,
        channel: TransactionChannel,
        acting_user: Optional[str] = None,
        destination_account: Optional[Account] = None,
        reference_number: Optional[str] = None
    ) -> Transaction:
        """
        Record a transaction for a mutation the Ledger has just applied

        Args:
            account: Account after the Ledger mutation
            transaction_type: Type of transaction
            amount: Positive amount moved
            balance_before: Account balance before the mutation
            description: Free text description
            channel: Originating channel
            acting_user: User performing the operation (SYSTEM when omitted)
            destination_account: Counterparty account for transfers
            reference_number: Optional external reference

        Returns:
            The persisted Transaction

        Raises:
            ConsistencyError: If before/after balances violate the debit/credit rule
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Transactions can only be recorded inside a unit of work")

        user = resolve_acting_user(acting_user)
        balance_after = expected_balance_after(transaction_type, balance_before, amount)
        if balance_after != account.balance:
            message = (
                f"{transaction_type.name} of {amount.to_string()} on {account.account_number}: "
                f"expected balance {balance_after.to_string()}, account holds {account.balance.to_string()}"
            )
            log_action(logger, "error", f"Ledger consistency violation: {message}",
                       user_id=user, action="record_transaction", resource=account.id)
            raise ConsistencyError(message)

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account.id,
            transaction_number=self.sequences.next_for(SequenceName.TRANSACTION_NUMBER),
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            channel=channel,
            transaction_date=now,
            processed_date=now,
            created_by=user,
            reference_number=reference_number,
            destination_account_id=destination_account.id if destination_account else None
        )

        self._insert_transaction(transaction)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "transaction_number": transaction.transaction_number,
                    "account_id": account.id,
                    "transaction_type": transaction_type.value,
                    "amount": str(amount.amount),
                    "currency": amount.currency.code,
                    "balance_before": str(balance_before.amount),
                    "balance_after": str(balance_after.amount),
                },
                user_id=user
            )

        log_action(logger, "info", f"Recorded {transaction.transaction_number}",
                   user_id=user, action="record_transaction", resource=account.id,
                   extra={"transaction_type": transaction_type.value, "amount": str(amount.amount)})
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Get transaction by ID"""
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if not transaction_dict:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return self._transaction_from_dict(transaction_dict)

    def get_by_number(self, transaction_number: str) -> Transaction:
        """Get transaction by its business number"""
        found = self.storage.find(self.table_name, {"transaction_number": transaction_number})
        if not found:
            raise TransactionNotFound(f"Transaction {transaction_number} not found")
        return self._transaction_from_dict(found[0])

    def get_account_transactions(
        self,
        account_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        transaction_types: Optional[List[TransactionType]] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """
        Get transactions for an account with optional filters

        Args:
            account_id: Account ID
            start_date: Optional start date filter (inclusive)
            end_date: Optional end date filter (inclusive)
            transaction_types: Optional transaction type filter
            limit: Optional limit on number of transactions

        Returns:
            List of Transaction objects, oldest first
        """
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]

        if start_date:
            transactions = [t for t in transactions if t.transaction_date >= start_date]
        if end_date:
            transactions = [t for t in transactions if t.transaction_date <= end_date]
        if transaction_types:
            transactions = [t for t in transactions if t.transaction_type in transaction_types]

        transactions.sort(key=lambda t: (t.transaction_date, t.transaction_number))

        if limit:
            transactions = transactions[:limit]

        return transactions

    def _insert_transaction(self, transaction: Transaction) -> None:
        """Insert a transaction row; rows are never rewritten"""
        if self.storage.exists(self.table_name, transaction.id):
            raise ConsistencyError(f"Transaction {transaction.id} already recorded")
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['currency'] = transaction.currency.code
        result['amount'] = str(transaction.amount.amount)
        result['balance_before'] = str(transaction.balance_before.amount)
        result['balance_after'] = str(transaction.balance_after.amount)
        result['channel'] = transaction.channel.value
        result['transaction_date'] = transaction.transaction_date.isoformat()
        result['processed_date'] = transaction.processed_date.isoformat()
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_number=data['transaction_number'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_before=Money(Decimal(data['balance_before']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            description=data['description'],
            channel=TransactionChannel(data['channel']),
            transaction_date=datetime.fromisoformat(data['transaction_date']),
            processed_date=datetime.fromisoformat(data['processed_date']),
            created_by=data['created_by'],
            reference_number=data.get('reference_number'),
            destination_account_id=data.get('destination_account_id')
        )
