"""
Customer Management Module

Personal and corporate customers share one record with a per-type profile
payload. New customers are registered inactive and pending approval; a
CUSTOMER_CREATION approval request is filed in the same unit of work.
"""

from datetime import datetime, date, timezone
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid
import re

from .approvals import ApprovalRequestType, ApprovalWorkflow, EntityType
from .audit import AuditTrail, AuditEventType
from .config import resolve_acting_user
from .errors import CustomerNotFound, ValidationError
from .logging_config import get_logger, log_action
from .sequences import SequenceGenerator, SequenceName
from .storage import StorageInterface, StorageRecord


logger = get_logger("minibank.customers")


class CustomerType(Enum):
    """Customer variants"""
    PERSONAL = "personal"
    CORPORATE = "corporate"


class CustomerStatus(Enum):
    """Customer lifecycle states"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"
    FROZEN = "frozen"


class CustomerApprovalStatus(Enum):
    """Result of the customer creation review"""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class PersonalProfile:
    """Profile of an individual customer"""
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    identity_number: Optional[str] = None
    identity_type: Optional[str] = None  # e.g. KTP, PASSPORT

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class CorporateProfile:
    """Profile of a company customer"""
    company_name: str
    company_registration_number: Optional[str] = None
    tax_identification_number: Optional[str] = None
    contact_person_name: Optional[str] = None
    contact_person_title: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.company_name


CustomerProfile = Union[PersonalProfile, CorporateProfile]

_PROFILE_TYPES = {
    CustomerType.PERSONAL: PersonalProfile,
    CustomerType.CORPORATE: CorporateProfile,
}


@dataclass
class Customer(StorageRecord):
    """
    Bank customer; ``customer_type`` selects the profile variant
    """
    customer_number: str
    customer_type: CustomerType
    profile: CustomerProfile
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    branch_id: Optional[str] = None
    status: CustomerStatus = CustomerStatus.INACTIVE
    approval_status: CustomerApprovalStatus = CustomerApprovalStatus.PENDING_APPROVAL
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.profile, _PROFILE_TYPES[self.customer_type]):
            raise ValidationError(
                f"{self.customer_type.name} customer requires a {_PROFILE_TYPES[self.customer_type].__name__}"
            )

        if self.email:
            email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
            if not re.match(email_pattern, self.email):
                raise ValidationError(f"Invalid email address: {self.email}")

    @property
    def display_name(self) -> str:
        return self.profile.display_name

    @property
    def is_corporate(self) -> bool:
        return self.customer_type == CustomerType.CORPORATE

    @property
    def is_active_and_approved(self) -> bool:
        return (self.status == CustomerStatus.ACTIVE
                and self.approval_status == CustomerApprovalStatus.APPROVED)


class CustomerRegistry:
    """
    Registers customers and files their creation approval requests
    """

    def __init__(self, storage: StorageInterface, sequence_generator: SequenceGenerator,
                 audit_trail: AuditTrail, approval_workflow: Optional[ApprovalWorkflow] = None):
        self.storage = storage
        self.sequences = sequence_generator
        self.audit_trail = audit_trail
        self.approval_workflow = approval_workflow
        self.table_name = "customers"

    def register_personal_customer(
        self,
        first_name: str,
        last_name: str,
        date_of_birth: Optional[date] = None,
        identity_number: Optional[str] = None,
        identity_type: Optional[str] = None,
        acting_user: Optional[str] = None,
        notes: Optional[str] = None,
        **contact
    ) -> Customer:
        """
        Register an individual customer

        Args:
            first_name: Customer's first name
            last_name: Customer's last name
            date_of_birth: Optional date of birth
            identity_number: National ID or passport number
            identity_type: Kind of identity document
            acting_user: User registering the customer
            notes: Notes for the approval request
            **contact: email, phone_number, address, city, postal_code, country, branch_id

        Returns:
            Created Customer (INACTIVE, PENDING_APPROVAL)
        """
        if not first_name or not first_name.strip():
            raise ValidationError("First name is required")

        profile = PersonalProfile(
            first_name=first_name.strip(),
            last_name=(last_name or "").strip(),
            date_of_birth=date_of_birth,
            identity_number=identity_number,
            identity_type=identity_type
        )
        return self._register(CustomerType.PERSONAL, profile, acting_user, notes, contact)

    def register_corporate_customer(
        self,
        company_name: str,
        company_registration_number: Optional[str] = None,
        tax_identification_number: Optional[str] = None,
        contact_person_name: Optional[str] = None,
        contact_person_title: Optional[str] = None,
        acting_user: Optional[str] = None,
        notes: Optional[str] = None,
        **contact
    ) -> Customer:
        """Register a company customer; see register_personal_customer"""
        if not company_name or not company_name.strip():
            raise ValidationError("Company name is required")

        profile = CorporateProfile(
            company_name=company_name.strip(),
            company_registration_number=company_registration_number,
            tax_identification_number=tax_identification_number,
            contact_person_name=contact_person_name,
            contact_person_title=contact_person_title
        )
        return self._register(CustomerType.CORPORATE, profile, acting_user, notes, contact)

    def _register(self, customer_type: CustomerType, profile: CustomerProfile,
                  acting_user: Optional[str], notes: Optional[str], contact: Dict) -> Customer:
        user = resolve_acting_user(acting_user)
        allowed = {'email', 'phone_number', 'address', 'city', 'postal_code', 'country', 'branch_id'}
        unknown = set(contact) - allowed
        if unknown:
            raise TypeError(f"Unexpected customer fields: {', '.join(sorted(unknown))}")

        def operation() -> Customer:
            now = datetime.now(timezone.utc)
            customer = Customer(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_number=self.sequences.next_for(SequenceName.CUSTOMER),
                customer_type=customer_type,
                profile=profile,
                created_by=user,
                updated_by=user,
                **contact
            )
            self.save_customer(customer)

            self.audit_trail.log_event(
                event_type=AuditEventType.CUSTOMER_CREATED,
                entity_type="customer",
                entity_id=customer.id,
                metadata={
                    "customer_number": customer.customer_number,
                    "customer_type": customer_type.value,
                    "display_name": customer.display_name,
                },
                user_id=user
            )

            if self.approval_workflow:
                self.approval_workflow.create_request(
                    request_type=ApprovalRequestType.CUSTOMER_CREATION,
                    entity_type=EntityType.CUSTOMER,
                    entity_id=customer.id,
                    requested_by=user,
                    notes=notes,
                    branch_id=customer.branch_id
                )
            return customer

        customer = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Registered customer {customer.customer_number}",
                   user_id=user, action="register_customer", resource=customer.id,
                   extra={"customer_type": customer_type.value})
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        """Get customer by ID"""
        customer_dict = self.storage.load(self.table_name, customer_id)
        if not customer_dict:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return self._customer_from_dict(customer_dict)

    def get_customer_by_number(self, customer_number: str) -> Customer:
        """Get customer by customer number"""
        found = self.storage.find(self.table_name, {"customer_number": customer_number})
        if not found:
            raise CustomerNotFound(f"Customer {customer_number} not found")
        return self._customer_from_dict(found[0])

    def find_customer(self, customer_id: str) -> Optional[Customer]:
        customer_dict = self.storage.load(self.table_name, customer_id)
        return self._customer_from_dict(customer_dict) if customer_dict else None

    def list_customers(self, status: Optional[CustomerStatus] = None) -> List[Customer]:
        customers = [self._customer_from_dict(data) for data in self.storage.load_all(self.table_name)]
        if status:
            customers = [c for c in customers if c.status == status]
        return customers

    def lock_customer(self, customer_id: str) -> Customer:
        """Lock a customer row for the rest of the unit of work and re-read it"""
        self.storage.lock_record(self.table_name, customer_id)
        return self.get_customer(customer_id)

    def save_customer(self, customer: Customer) -> None:
        """Save customer to storage"""
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def _customer_to_dict(self, customer: Customer) -> Dict:
        """Convert Customer to dictionary for storage"""
        result = customer.to_dict()
        result['customer_type'] = customer.customer_type.value
        result['status'] = customer.status.value
        result['approval_status'] = customer.approval_status.value

        profile = asdict(customer.profile)
        if isinstance(customer.profile, PersonalProfile) and customer.profile.date_of_birth:
            profile['date_of_birth'] = customer.profile.date_of_birth.isoformat()
        result['profile'] = profile

        return result

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""
        customer_type = CustomerType(data['customer_type'])

        profile_data = dict(data['profile'])
        if customer_type == CustomerType.PERSONAL and profile_data.get('date_of_birth'):
            profile_data['date_of_birth'] = date.fromisoformat(profile_data['date_of_birth'])
        profile = _PROFILE_TYPES[customer_type](**profile_data)

        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_number=data['customer_number'],
            customer_type=customer_type,
            profile=profile,
            email=data.get('email'),
            phone_number=data.get('phone_number'),
            address=data.get('address'),
            city=data.get('city'),
            postal_code=data.get('postal_code'),
            country=data.get('country'),
            branch_id=data.get('branch_id'),
            status=CustomerStatus(data['status']),
            approval_status=CustomerApprovalStatus(data['approval_status']),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by')
        )
