"""
Shared fixtures: an in-memory banking system with an approved customer
and a savings product.
"""

from decimal import Decimal

import pytest

from minibank.account_opening import AccountOpeningRequest
from minibank.customers import CustomerType
from minibank.storage import InMemoryStorage
from minibank.system import BankingSystem


TELLER = "teller1"
SUPERVISOR = "supervisor1"


@pytest.fixture
def system():
    banking = BankingSystem(storage=InMemoryStorage(lock_timeout=2.0, retry_backoff=0.0))
    yield banking
    banking.close()


@pytest.fixture
def personal_customer(system):
    customer = system.customers.register_personal_customer(
        first_name="Siti",
        last_name="Rahma",
        identity_number="3201010101900001",
        identity_type="KTP",
        email="siti@example.com",
        branch_id="BR-JKT",
        acting_user=TELLER,
    )
    approve_pending(system, customer.id)
    return system.customers.get_customer(customer.id)


@pytest.fixture
def corporate_customer(system):
    customer = system.customers.register_corporate_customer(
        company_name="PT Maju Bersama",
        company_registration_number="AHU-0001",
        branch_id="BR-JKT",
        acting_user=TELLER,
    )
    approve_pending(system, customer.id)
    return system.customers.get_customer(customer.id)


@pytest.fixture
def savings_product(system):
    return system.products.create_product(
        product_code="TAB001",
        product_name="Tabungan Wadiah",
        minimum_opening_balance=Decimal("50000"),
        allowed_customer_types=[CustomerType.PERSONAL, CustomerType.CORPORATE],
        acting_user=SUPERVISOR,
    )


def approve_pending(system, entity_id):
    """Approve the pending request gating ``entity_id``"""
    pending = [r for r in system.approvals.list_pending() if r.entity_id == entity_id]
    assert len(pending) == 1
    return system.approvals.approve(pending[0].id, reviewed_by=SUPERVISOR)


def open_active_account(system, customer, product, initial_deposit):
    """Open and approve an account, returning the reloaded account"""
    result = system.account_opening.open_account(
        AccountOpeningRequest(
            customer_id=customer.id,
            product_id=product.id,
            initial_deposit=Decimal(str(initial_deposit)),
        ),
        acting_user=TELLER,
    )
    system.approvals.approve(result.approval_request.id, reviewed_by=SUPERVISOR)
    return system.account_manager.get_account(result.account.id)


@pytest.fixture
def open_account(system):
    """Factory fixture: open and approve an account"""
    def _open(customer, product, initial_deposit):
        return open_active_account(system, customer, product, initial_deposit)
    return _open
