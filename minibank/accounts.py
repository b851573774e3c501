"""
Account Management Module

Account records, their lifecycle states and the repository used by the
ledger and the orchestrators to load, lock and persist them. Balances are
never changed here; the Ledger owns every balance mutation.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .errors import AccountNotFound
from .storage import StorageInterface, StorageRecord


class AccountStatus(Enum):
    """Account lifecycle states"""
    INACTIVE = "inactive"  # Opened, waiting for approval
    ACTIVE = "active"      # Normal operation
    CLOSED = "closed"      # Permanently closed
    FROZEN = "frozen"      # Temporarily suspended


class AccountApprovalStatus(Enum):
    """Result of the account opening review"""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Account(StorageRecord):
    """
    Customer deposit account.

    Invariants: ``balance >= 0`` and a CLOSED account has a zero balance.
    """
    account_number: str
    customer_id: str
    product_id: str
    account_name: str
    balance: Money
    branch_id: Optional[str] = None
    status: AccountStatus = AccountStatus.INACTIVE
    approval_status: AccountApprovalStatus = AccountApprovalStatus.PENDING_APPROVAL
    opened_date: Optional[date] = None
    closed_date: Optional[date] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    def touch(self, acting_user: str) -> None:
        """Stamp the account as modified by ``acting_user``"""
        self.updated_by = acting_user
        self.updated_at = datetime.now(timezone.utc)


class AccountManager:
    """
    Loads, locks and persists accounts
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "accounts"

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise AccountNotFound"""
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_customer_accounts(self, customer_id: str) -> List[Account]:
        """Get all accounts for a customer"""
        accounts_data = self.storage.find(self.accounts_table, {"customer_id": customer_id})
        return [self._account_from_dict(data) for data in accounts_data]

    def lock_account(self, account_id: str) -> Account:
        """
        Lock an account row for the rest of the unit of work and re-read it

        Raises:
            AccountNotFound: If the account does not exist
            ConcurrencyConflict: If the lock cannot be acquired in time
        """
        self.storage.lock_record(self.accounts_table, account_id)
        return self.require_account(account_id)

    def save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = str(account.balance.amount)
        result['currency'] = account.balance.currency.code
        result['status'] = account.status.value
        result['approval_status'] = account.approval_status.value
        result['opened_date'] = account.opened_date.isoformat() if account.opened_date else None
        result['closed_date'] = account.closed_date.isoformat() if account.closed_date else None
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        opened_date = date.fromisoformat(data['opened_date']) if data.get('opened_date') else None
        closed_date = date.fromisoformat(data['closed_date']) if data.get('closed_date') else None

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            product_id=data['product_id'],
            account_name=data['account_name'],
            balance=Money(Decimal(data['balance']), Currency[data['currency']]),
            branch_id=data.get('branch_id'),
            status=AccountStatus(data['status']),
            approval_status=AccountApprovalStatus(data['approval_status']),
            opened_date=opened_date,
            closed_date=closed_date,
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by')
        )
