"""
Transfer Module

Moves funds between two accounts. ``validate`` checks a request without side
effects and resolves display details for confirmation; ``process`` executes
both legs in one unit of work with the account rows locked in ascending id
order, so opposite transfers between the same pair cannot deadlock.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .config import resolve_acting_user
from .currency import Money
from .customers import CustomerRegistry
from .errors import (
    AccountNotActive, AccountNotFound, ConsistencyError, CurrencyMismatch,
    InsufficientBalance, InvalidAmount, SameAccountTransfer
)
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .sequences import SequenceGenerator, SequenceName
from .transactions import Transaction, TransactionRecorder, TransactionType, TransactionChannel


logger = get_logger("minibank.transfers")


class TransferRequest(BaseModel):
    source_account_id: str
    destination_account_number: str
    amount: Decimal = Field(..., description="Amount in the source account currency")
    description: Optional[str] = None
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class ValidatedTransfer:
    """A transfer that passed validation, with resolved counterparty details"""
    source_account_id: str
    source_account_number: str
    destination_account_id: str
    destination_account_number: str
    destination_account_name: str
    destination_customer_name: str
    amount: Money
    description: Optional[str]
    reference_number: Optional[str]
    acting_user: str


@dataclass(frozen=True)
class TransferResult:
    reference_number: str
    source_transaction: Transaction
    destination_transaction: Transaction
    source_balance: Money
    destination_balance: Money


class TransferCoordinator:
    """Validates and executes account-to-account transfers"""

    def __init__(self, storage, accounts: AccountManager, customers: CustomerRegistry,
                 ledger: Ledger, recorder: TransactionRecorder,
                 sequences: SequenceGenerator, audit_trail: AuditTrail):
        self.storage = storage
        self.accounts = accounts
        self.customers = customers
        self.ledger = ledger
        self.recorder = recorder
        self.sequences = sequences
        self.audit_trail = audit_trail

    def validate(self, request: TransferRequest, acting_user: Optional[str] = None) -> ValidatedTransfer:
        """
        Check a transfer request against current account state

        Raises:
            AccountNotFound: Unknown source or destination
            AccountNotActive: Source or destination is not ACTIVE
            SameAccountTransfer: Source and destination are the same account
            InvalidAmount: Amount is not positive
            CurrencyMismatch: Accounts hold different currencies
            InsufficientBalance: Source balance is below the amount
        """
        source = self.accounts.require_account(request.source_account_id)
        if not source.is_active:
            raise AccountNotActive(f"Source account {source.account_number} is not active")

        destination = self.accounts.get_account_by_number(request.destination_account_number)
        if not destination:
            raise AccountNotFound(
                f"Destination account not found: {request.destination_account_number}"
            )
        if not destination.is_active:
            raise AccountNotActive(f"Destination account {destination.account_number} is not active")

        if source.id == destination.id:
            raise SameAccountTransfer("Cannot transfer to the same account")

        amount = Money(request.amount, source.currency)
        if not amount.is_positive():
            raise InvalidAmount("Transfer amount must be greater than zero")
        if destination.currency != source.currency:
            raise CurrencyMismatch(
                f"Cannot transfer {source.currency.code} to a {destination.currency.code} account"
            )
        if amount > source.balance:
            raise InsufficientBalance(
                f"Insufficient balance: available {source.balance.to_string()}, "
                f"requested {amount.to_string()}"
            )

        owner = self.customers.find_customer(destination.customer_id)
        return ValidatedTransfer(
            source_account_id=source.id,
            source_account_number=source.account_number,
            destination_account_id=destination.id,
            destination_account_number=destination.account_number,
            destination_account_name=destination.account_name,
            destination_customer_name=owner.display_name if owner else "",
            amount=amount,
            description=request.description,
            reference_number=request.reference_number,
            acting_user=resolve_acting_user(acting_user)
        )

    def process(self, validated: ValidatedTransfer) -> TransferResult:
        """
        Execute both legs of a validated transfer atomically

        Balances are re-checked under lock; any failure rolls back both legs.
        """
        user = validated.acting_user

        def operation() -> TransferResult:
            first_id, second_id = sorted((validated.source_account_id, validated.destination_account_id))
            locked = {
                first_id: self.accounts.lock_account(first_id),
                second_id: self.accounts.lock_account(second_id),
            }
            source = locked[validated.source_account_id]
            destination = locked[validated.destination_account_id]
            amount = validated.amount
            total_before = source.balance + destination.balance

            reference = validated.reference_number or self.sequences.next_for(SequenceName.TRANSFER_REFERENCE)

            source_before = source.balance
            self.ledger.transfer_out(source, amount, user)
            source_transaction = self.recorder.record(
                account=source,
                transaction_type=TransactionType.TRANSFER_OUT,
                amount=amount,
                balance_before=source_before,
                description=_describe("Transfer to", destination.account_number, validated.description),
                channel=TransactionChannel.TRANSFER,
                acting_user=user,
                destination_account=destination,
                reference_number=reference
            )

            destination_before = destination.balance
            self.ledger.transfer_in(destination, amount, user)
            destination_transaction = self.recorder.record(
                account=destination,
                transaction_type=TransactionType.TRANSFER_IN,
                amount=amount,
                balance_before=destination_before,
                description=_describe("Transfer from", source.account_number, validated.description),
                channel=TransactionChannel.TRANSFER,
                acting_user=user,
                destination_account=source,
                reference_number=reference
            )

            if source.balance + destination.balance != total_before:
                log_action(logger, "error", "Transfer did not conserve funds",
                           user_id=user, action="transfer", resource=reference)
                raise ConsistencyError(f"Transfer {reference} did not conserve funds")

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="account",
                entity_id=source.id,
                metadata={
                    "reference_number": reference,
                    "destination_account_id": destination.id,
                    "amount": str(amount.amount),
                    "currency": amount.currency.code,
                },
                user_id=user
            )

            return TransferResult(
                reference_number=reference,
                source_transaction=source_transaction,
                destination_transaction=destination_transaction,
                source_balance=source.balance,
                destination_balance=destination.balance
            )

        result = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Transfer {result.reference_number} completed",
                   user_id=user, action="transfer", resource=validated.source_account_id,
                   extra={"amount": str(validated.amount.amount),
                          "destination": validated.destination_account_number})
        return result

    def transfer(self, request: TransferRequest, acting_user: Optional[str] = None) -> TransferResult:
        """Validate then process a transfer"""
        return self.process(self.validate(request, acting_user))


def _describe(direction: str, account_number: str, description: Optional[str]) -> str:
    if description and description.strip():
        return f"{direction} {account_number} - {description.strip()}"
    return f"{direction} {account_number}"
