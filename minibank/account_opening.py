"""
Account Opening Module

Opens a new account for an approved customer with an initial deposit, and
files the ACCOUNT_OPENING approval request, all in one unit of work.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional
import uuid

from pydantic import BaseModel, Field

from .accounts import Account, AccountManager, AccountStatus, AccountApprovalStatus
from .approvals import ApprovalRequest, ApprovalRequestType, ApprovalWorkflow, EntityType
from .audit import AuditTrail, AuditEventType
from .config import get_config, resolve_acting_user
from .currency import Money
from .customers import Customer, CustomerRegistry
from .errors import (
    CustomerNotActive, InvalidAmount, MinimumDepositNotMet, ProductNotEligible
)
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .products import Product, ProductCatalog
from .sequences import SequenceGenerator, SequenceName
from .transactions import Transaction, TransactionRecorder, TransactionType, TransactionChannel


logger = get_logger("minibank.account_opening")


class AccountOpeningRequest(BaseModel):
    customer_id: str
    product_id: str
    initial_deposit: Decimal = Field(..., description="Initial deposit in the product currency")
    account_name: Optional[str] = Field(None, description="Defaults to the customer's display name")
    notes: Optional[str] = None


@dataclass(frozen=True)
class AccountOpeningResult:
    """Everything created by a successful opening"""
    account: Account
    transaction: Transaction
    approval_request: ApprovalRequest


class AccountOpeningOrchestrator:
    """
    Validates an opening request and creates the account, its initial
    deposit and its approval request atomically
    """

    def __init__(self, storage, customers: CustomerRegistry, products: ProductCatalog,
                 accounts: AccountManager, sequences: SequenceGenerator, ledger: Ledger,
                 recorder: TransactionRecorder, approvals: ApprovalWorkflow,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.customers = customers
        self.products = products
        self.accounts = accounts
        self.sequences = sequences
        self.ledger = ledger
        self.recorder = recorder
        self.approvals = approvals
        self.audit_trail = audit_trail

    def minimum_deposit_for(self, product: Product, customer: Customer) -> Money:
        """Opening minimum for this customer; corporate customers pay a multiple"""
        minimum = product.minimum_opening_balance
        if customer.is_corporate:
            minimum = minimum * Decimal(get_config().corporate_minimum_multiplier)
        return minimum

    def open_account(self, request: AccountOpeningRequest,
                     acting_user: Optional[str] = None) -> AccountOpeningResult:
        """
        Open an account with an initial deposit

        Raises:
            CustomerNotFound: Unknown customer
            CustomerNotActive: Customer is not ACTIVE and APPROVED
            ProductNotFound: Unknown product
            ProductNotEligible: Product inactive or not offered to this customer type
            InvalidAmount: Initial deposit is not positive
            MinimumDepositNotMet: Initial deposit below the opening minimum
        """
        user = resolve_acting_user(acting_user)

        def operation() -> AccountOpeningResult:
            customer = self.customers.get_customer(request.customer_id)
            if not customer.is_active_and_approved:
                raise CustomerNotActive(
                    f"Customer {customer.customer_number} is {customer.status.value}/"
                    f"{customer.approval_status.value}"
                )

            product = self.products.get_product(request.product_id)
            if not product.is_active:
                raise ProductNotEligible(f"Product {product.product_code} is not active")
            if not product.allows(customer.customer_type):
                raise ProductNotEligible(
                    f"Product {product.product_code} is not available for "
                    f"{customer.customer_type.value} customers"
                )

            deposit = Money(request.initial_deposit, product.currency)
            if not deposit.is_positive():
                raise InvalidAmount("Initial deposit must be greater than zero")
            minimum = self.minimum_deposit_for(product, customer)
            if deposit < minimum:
                raise MinimumDepositNotMet(
                    f"Initial deposit {deposit.to_string()} is below the minimum {minimum.to_string()}"
                )

            sequence = (SequenceName.CORPORATE_ACCOUNT_NUMBER if customer.is_corporate
                        else SequenceName.ACCOUNT_NUMBER)
            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=self.sequences.next_for(sequence),
                customer_id=customer.id,
                product_id=product.id,
                account_name=request.account_name or customer.display_name,
                balance=Money.zero(product.currency),
                branch_id=customer.branch_id,
                status=AccountStatus.INACTIVE,
                approval_status=AccountApprovalStatus.PENDING_APPROVAL,
                opened_date=now.date(),
                created_by=user,
                updated_by=user
            )
            self.accounts.save_account(account)
            self.storage.lock_record(self.accounts.accounts_table, account.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "customer_id": customer.id,
                    "product_code": product.product_code,
                    "initial_deposit": str(deposit.amount),
                },
                user_id=user
            )

            balance_before = account.balance
            self.ledger.deposit(account, deposit, user)
            transaction = self.recorder.record(
                account=account,
                transaction_type=TransactionType.DEPOSIT,
                amount=deposit,
                balance_before=balance_before,
                description="Initial deposit",
                channel=TransactionChannel.TELLER,
                acting_user=user
            )

            notes = request.notes
            if not notes:
                kind = "corporate account" if customer.is_corporate else "account"
                notes = f"New {kind} opening with initial deposit {deposit.amount}"
            approval_request = self.approvals.create_request(
                request_type=ApprovalRequestType.ACCOUNT_OPENING,
                entity_type=EntityType.ACCOUNT,
                entity_id=account.id,
                requested_by=user,
                notes=notes,
                branch_id=account.branch_id
            )

            return AccountOpeningResult(account=account, transaction=transaction,
                                        approval_request=approval_request)

        result = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Opened account {result.account.account_number}",
                   user_id=user, action="open_account", resource=result.account.id,
                   extra={"initial_deposit": str(result.transaction.amount.amount)})
        return result
