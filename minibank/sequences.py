"""
Sequence Number Module

Hands out unique, increasing, prefixed business identifiers (account,
transaction, customer and transfer reference numbers) from named counters
kept in storage.
"""

from enum import Enum
from typing import Optional

from .audit import AuditTrail, AuditEventType
from .config import get_config, resolve_acting_user
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("minibank.sequences")


class SequenceName(Enum):
    """Well-known counters with their identifier prefixes"""
    TRANSACTION_NUMBER = ("TRANSACTION_NUMBER", "TXN")
    ACCOUNT_NUMBER = ("ACCOUNT_NUMBER", "ACC")
    CORPORATE_ACCOUNT_NUMBER = ("CORPORATE_ACCOUNT_NUMBER", "CORP")
    CUSTOMER = ("CUSTOMER", "C")
    TRANSFER_REFERENCE = ("TRANSFER_REFERENCE", "TRF")

    def __init__(self, counter_name: str, prefix: str):
        self.counter_name = counter_name
        self.prefix = prefix


class SequenceGenerator:
    """
    Issues identifiers of the form ``prefix + zero-padded value``.

    The read-increment-write of a counter is a single atomic storage
    operation, so concurrent callers never receive the same value. Values
    issued inside a unit of work that later rolls back may leave gaps.
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 padding: Optional[int] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.padding = padding if padding is not None else get_config().sequence_padding

    def next_value(self, counter_name: str, prefix: str) -> str:
        """
        Allocate the next identifier from a counter

        Args:
            counter_name: Name of the counter; created at 0 on first use
            prefix: Identifier prefix, e.g. "TXN"

        Returns:
            Formatted identifier such as "TXN0000001"

        Raises:
            ConcurrencyConflict: If the counter could not be updated
        """
        value = self.storage.increment_counter(counter_name, prefix)
        return self.format(prefix, value)

    def next_for(self, sequence: SequenceName) -> str:
        """Allocate the next identifier from a well-known counter"""
        return self.next_value(sequence.counter_name, sequence.prefix)

    def format(self, prefix: str, value: int) -> str:
        return f"{prefix}{value:0{self.padding}d}"

    def current_value(self, counter_name: str) -> int:
        """Last value issued by a counter (0 when it has never been used)"""
        return self.storage.get_counter(counter_name)

    def reset(self, counter_name: str, start: int = 0, prefix: str = "",
              acting_user: Optional[str] = None) -> None:
        """Reset a counter so that the next issued value is ``start + 1``"""
        if start < 0:
            raise ValueError("Counter start value cannot be negative")

        user = resolve_acting_user(acting_user)
        with self.storage.atomic():
            self.storage.set_counter(counter_name, start, prefix)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.SEQUENCE_RESET,
                    entity_type="sequence_counter",
                    entity_id=counter_name,
                    metadata={"start": start, "prefix": prefix},
                    user_id=user
                )

        log_action(logger, "warning", f"Sequence {counter_name} reset to {start}",
                   user_id=user, action="reset_sequence", resource=counter_name)
