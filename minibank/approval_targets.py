"""
Approval side effects for customers and accounts.

Each target runs inside the approval workflow's unit of work and locks the
gated row before changing it. Only an entity that is still INACTIVE and
PENDING_APPROVAL can be activated or rejected.
"""

from datetime import datetime, timezone

from .accounts import Account, AccountManager, AccountStatus, AccountApprovalStatus
from .approvals import ApprovalTarget, EntityType
from .audit import AuditTrail, AuditEventType
from .customers import Customer, CustomerRegistry, CustomerStatus, CustomerApprovalStatus
from .errors import NotAwaitingApproval
from .ledger import Ledger
from .transactions import TransactionRecorder, TransactionType, TransactionChannel


class CustomerApprovalTarget(ApprovalTarget):
    """Approved customers become ACTIVE; rejected ones stay INACTIVE"""

    entity_type = EntityType.CUSTOMER

    def __init__(self, customers: CustomerRegistry, audit_trail: AuditTrail):
        self.customers = customers
        self.audit_trail = audit_trail

    @staticmethod
    def _check_awaiting(customer: Customer) -> None:
        if (customer.status != CustomerStatus.INACTIVE
                or customer.approval_status != CustomerApprovalStatus.PENDING_APPROVAL):
            raise NotAwaitingApproval(
                f"Customer {customer.customer_number} is {customer.status.value}/"
                f"{customer.approval_status.value}"
            )

    def require_awaiting_approval(self, entity_id: str) -> None:
        self._check_awaiting(self.customers.get_customer(entity_id))

    def activate(self, entity_id: str, reviewed_by: str) -> None:
        customer = self.customers.lock_customer(entity_id)
        self._check_awaiting(customer)
        customer.status = CustomerStatus.ACTIVE
        customer.approval_status = CustomerApprovalStatus.APPROVED
        customer.updated_by = reviewed_by
        customer.updated_at = datetime.now(timezone.utc)
        self.customers.save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_APPROVED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"customer_number": customer.customer_number},
            user_id=reviewed_by
        )

    def reject(self, entity_id: str, reviewed_by: str, reason: str) -> None:
        customer = self.customers.lock_customer(entity_id)
        self._check_awaiting(customer)
        customer.status = CustomerStatus.INACTIVE
        customer.approval_status = CustomerApprovalStatus.REJECTED
        customer.updated_by = reviewed_by
        customer.updated_at = datetime.now(timezone.utc)
        self.customers.save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_REJECTED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"customer_number": customer.customer_number, "reason": reason},
            user_id=reviewed_by
        )


class AccountApprovalTarget(ApprovalTarget):
    """
    Approved accounts become ACTIVE. A rejected account has its initial
    deposit refunded through a WITHDRAWAL and is then closed, so that a
    closed account never holds a balance.
    """

    entity_type = EntityType.ACCOUNT

    def __init__(self, accounts: AccountManager, ledger: Ledger,
                 recorder: TransactionRecorder, audit_trail: AuditTrail):
        self.accounts = accounts
        self.ledger = ledger
        self.recorder = recorder
        self.audit_trail = audit_trail

    @staticmethod
    def _check_awaiting(account: Account) -> None:
        if (account.status != AccountStatus.INACTIVE
                or account.approval_status != AccountApprovalStatus.PENDING_APPROVAL):
            raise NotAwaitingApproval(
                f"Account {account.account_number} is {account.status.value}/"
                f"{account.approval_status.value}"
            )

    def require_awaiting_approval(self, entity_id: str) -> None:
        self._check_awaiting(self.accounts.require_account(entity_id))

    def activate(self, entity_id: str, reviewed_by: str) -> None:
        account = self.accounts.lock_account(entity_id)
        self._check_awaiting(account)
        account.status = AccountStatus.ACTIVE
        account.approval_status = AccountApprovalStatus.APPROVED
        account.touch(reviewed_by)
        self.accounts.save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_APPROVED,
            entity_type="account",
            entity_id=account.id,
            metadata={"account_number": account.account_number},
            user_id=reviewed_by
        )

    def reject(self, entity_id: str, reviewed_by: str, reason: str) -> None:
        account = self.accounts.lock_account(entity_id)
        self._check_awaiting(account)

        refund = account.balance
        if refund.is_positive():
            self.ledger.withdraw(account, refund, reviewed_by)
            self.recorder.record(
                account=account,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=refund,
                balance_before=refund,
                description=f"Refund of initial deposit - account opening rejected: {reason}",
                channel=TransactionChannel.TELLER,
                acting_user=reviewed_by
            )

        self.ledger.close(account, reviewed_by)
        account.approval_status = AccountApprovalStatus.REJECTED
        self.accounts.save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_REJECTED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "account_number": account.account_number,
                "reason": reason,
                "refunded_amount": str(refund.amount),
            },
            user_id=reviewed_by
        )
