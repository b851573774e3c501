"""
Banking System Wiring

Builds a storage backend from configuration and constructs every component
on top of it.
"""

from typing import Optional

from .account_opening import AccountOpeningOrchestrator
from .accounts import AccountManager
from .approval_targets import AccountApprovalTarget, CustomerApprovalTarget
from .approvals import ApprovalWorkflow
from .audit import AuditTrail
from .config import get_config
from .customers import CustomerRegistry
from .ledger import Ledger
from .logging_config import setup_logging
from .products import ProductCatalog
from .sequences import SequenceGenerator
from .storage import StorageInterface, create_storage
from .teller import TellerService
from .transactions import TransactionRecorder
from .transfers import TransferCoordinator


class BankingSystem:
    """Minibank core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 database_url: Optional[str] = None, configure_logging: bool = False):
        config = get_config()
        if configure_logging:
            setup_logging(config.log_level, "minibank", config.log_format, config.log_file)

        # Initialize storage
        self.storage = storage or create_storage(database_url or config.database_url)

        # Leaf components
        self.audit_trail = AuditTrail(self.storage)
        self.sequences = SequenceGenerator(self.storage, self.audit_trail)
        self.account_manager = AccountManager(self.storage)
        self.ledger = Ledger(self.storage, self.account_manager)
        self.recorder = TransactionRecorder(self.storage, self.sequences, self.audit_trail)

        # Approval workflow and the entities it gates
        self.approvals = ApprovalWorkflow(self.storage, self.audit_trail)
        self.customers = CustomerRegistry(self.storage, self.sequences, self.audit_trail, self.approvals)
        self.products = ProductCatalog(self.storage, self.audit_trail)
        self.approvals.register_target(CustomerApprovalTarget(self.customers, self.audit_trail))
        self.approvals.register_target(
            AccountApprovalTarget(self.account_manager, self.ledger, self.recorder, self.audit_trail)
        )

        # Orchestrators
        self.account_opening = AccountOpeningOrchestrator(
            self.storage, self.customers, self.products, self.account_manager,
            self.sequences, self.ledger, self.recorder, self.approvals, self.audit_trail
        )
        self.transfers = TransferCoordinator(
            self.storage, self.account_manager, self.customers, self.ledger,
            self.recorder, self.sequences, self.audit_trail
        )
        self.teller = TellerService(
            self.storage, self.account_manager, self.ledger, self.recorder, self.audit_trail
        )

    def close(self) -> None:
        self.storage.close()
