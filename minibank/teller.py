"""
Teller Operations Module

Cash deposits, cash withdrawals and account closure, each one complete unit
of work: lock the account, apply the Ledger mutation, record the transaction
and write the audit event.
"""

from typing import Optional

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .config import resolve_acting_user
from .currency import Money, to_decimal
from .errors import AccountNotActive
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .transactions import Transaction, TransactionRecorder, TransactionType, TransactionChannel


logger = get_logger("minibank.teller")


class TellerService:
    """Counter operations on a single account"""

    def __init__(self, storage, accounts: AccountManager, ledger: Ledger,
                 recorder: TransactionRecorder, audit_trail: AuditTrail):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.recorder = recorder
        self.audit_trail = audit_trail

    def cash_deposit(self, account_id: str, amount, acting_user: Optional[str] = None,
                     description: Optional[str] = None, reference_number: Optional[str] = None,
                     channel: TransactionChannel = TransactionChannel.TELLER) -> Transaction:
        """
        Deposit cash into an active account

        Raises:
            AccountNotFound: Unknown account
            AccountNotActive: Account is not ACTIVE
            InvalidAmount: Amount is not positive
        """
        return self._post(account_id, TransactionType.DEPOSIT, amount, acting_user,
                          description or "Cash deposit", reference_number, channel)

    def cash_withdrawal(self, account_id: str, amount, acting_user: Optional[str] = None,
                        description: Optional[str] = None, reference_number: Optional[str] = None,
                        channel: TransactionChannel = TransactionChannel.TELLER) -> Transaction:
        """
        Withdraw cash from an active account

        Raises:
            AccountNotFound: Unknown account
            AccountNotActive: Account is not ACTIVE
            InvalidAmount: Amount is not positive
            InsufficientBalance: Amount exceeds the balance
        """
        return self._post(account_id, TransactionType.WITHDRAWAL, amount, acting_user,
                          description or "Cash withdrawal", reference_number, channel)

    def _post(self, account_id: str, transaction_type: TransactionType, amount,
              acting_user: Optional[str], description: str,
              reference_number: Optional[str], channel: TransactionChannel) -> Transaction:
        user = resolve_acting_user(acting_user)

        def operation() -> Transaction:
            account = self.accounts.lock_account(account_id)
            if not account.is_active:
                raise AccountNotActive(
                    f"Account {account.account_number} is {account.status.value}"
                )

            money = amount if isinstance(amount, Money) else Money(to_decimal(amount), account.currency)
            balance_before = account.balance
            if transaction_type == TransactionType.DEPOSIT:
                self.ledger.deposit(account, money, user)
            else:
                self.ledger.withdraw(account, money, user)

            return self.recorder.record(
                account=account,
                transaction_type=transaction_type,
                amount=money,
                balance_before=balance_before,
                description=description,
                channel=channel,
                acting_user=user,
                reference_number=reference_number
            )

        transaction = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"{transaction_type.name} {transaction.transaction_number}",
                   user_id=user, action=transaction_type.value, resource=account_id,
                   extra={"amount": str(transaction.amount.amount),
                          "balance_after": str(transaction.balance_after.amount)})
        return transaction

    def close_account(self, account_id: str, acting_user: Optional[str] = None):
        """
        Close an account whose balance is zero

        Raises:
            AccountNotFound: Unknown account
            AlreadyClosed: Account is already closed
            NonZeroBalance: Balance is not zero
        """
        user = resolve_acting_user(acting_user)

        def operation():
            account = self.accounts.lock_account(account_id)
            self.ledger.close(account, user)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CLOSED,
                entity_type="account",
                entity_id=account.id,
                metadata={"account_number": account.account_number},
                user_id=user
            )
            return account

        account = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Closed account {account.account_number}",
                   user_id=user, action="close_account", resource=account.id)
        return account
