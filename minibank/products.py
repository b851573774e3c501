"""
Product Catalog Module

Minimal deposit product definitions used when opening accounts: opening
minimum, currency, active flag and which customer types may hold them.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config, resolve_acting_user
from .currency import Money, Currency, to_decimal
from .customers import CustomerType
from .errors import DuplicateProductCode, ProductNotFound, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("minibank.products")


class ProductType(Enum):
    """Deposit product families"""
    SAVINGS = "savings"
    CHECKING = "checking"
    TIME_DEPOSIT = "time_deposit"


@dataclass
class Product(StorageRecord):
    """Product template/definition"""
    product_code: str  # Unique identifier
    product_name: str
    product_type: ProductType
    currency: Currency
    minimum_opening_balance: Money
    is_active: bool = True
    allowed_customer_types: List[CustomerType] = field(default_factory=list)  # Empty means all
    description: str = ""

    def __post_init__(self):
        if self.minimum_opening_balance.currency != self.currency:
            raise ValidationError("Minimum opening balance currency must match product currency")
        if self.minimum_opening_balance.is_negative():
            raise ValidationError("Minimum opening balance cannot be negative")

    def allows(self, customer_type: CustomerType) -> bool:
        """Check if a customer type may open this product"""
        return not self.allowed_customer_types or customer_type in self.allowed_customer_types

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage, handling enums properly"""
        result = super().to_dict()
        result['product_type'] = self.product_type.value
        result['currency'] = self.currency.code
        result['minimum_opening_balance'] = str(self.minimum_opening_balance.amount)
        result['allowed_customer_types'] = [t.value for t in self.allowed_customer_types]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Product':
        """Create instance from dictionary, handling enum conversions"""
        data = dict(data)
        currency = Currency[data['currency']]
        data['product_type'] = ProductType(data['product_type'])
        data['currency'] = currency
        data['minimum_opening_balance'] = Money(Decimal(data['minimum_opening_balance']), currency)
        data['allowed_customer_types'] = [CustomerType(t) for t in data.get('allowed_customer_types', [])]
        return super().from_dict(data)


class ProductCatalog:
    """Manager class for product definitions"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "products"

    def create_product(self,
                       product_code: str,
                       product_name: str,
                       minimum_opening_balance,
                       product_type: ProductType = ProductType.SAVINGS,
                       currency: Optional[Currency] = None,
                       allowed_customer_types: Optional[List[CustomerType]] = None,
                       description: str = "",
                       acting_user: Optional[str] = None) -> Product:
        """
        Create a new product definition

        Raises:
            DuplicateProductCode: If the code is already taken
        """
        if not product_code or not product_code.strip():
            raise ValidationError("Product code is required")
        product_code = product_code.strip().upper()
        currency = currency or Currency.from_code(get_config().default_currency)
        user = resolve_acting_user(acting_user)

        def operation() -> Product:
            self.storage.lock_record("product_codes", product_code)
            if self.find_product_by_code(product_code):
                raise DuplicateProductCode(f"Product code {product_code} already exists")

            now = datetime.now(timezone.utc)
            product = Product(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                product_code=product_code,
                product_name=product_name,
                product_type=product_type,
                currency=currency,
                minimum_opening_balance=Money(to_decimal(minimum_opening_balance), currency),
                allowed_customer_types=list(allowed_customer_types or []),
                description=description
            )
            self.storage.save(self.table_name, product.id, product.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_CREATED,
                entity_type="product",
                entity_id=product.id,
                metadata={
                    "product_code": product_code,
                    "product_name": product_name,
                    "product_type": product_type.value,
                    "minimum_opening_balance": str(product.minimum_opening_balance.amount)
                },
                user_id=user
            )
            return product

        product = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Created product {product_code}",
                   user_id=user, action="create_product", resource=product.id)
        return product

    def get_product(self, product_id: str) -> Product:
        """Get product by ID"""
        data = self.storage.load(self.table_name, product_id)
        if not data:
            raise ProductNotFound(f"Product {product_id} not found")
        return Product.from_dict(data)

    def find_product_by_code(self, product_code: str) -> Optional[Product]:
        products = self.storage.find(self.table_name, {"product_code": product_code.upper()})
        if products:
            return Product.from_dict(products[0])
        return None

    def get_product_by_code(self, product_code: str) -> Product:
        """Get product by unique code"""
        product = self.find_product_by_code(product_code)
        if not product:
            raise ProductNotFound(f"Product {product_code} not found")
        return product

    def list_products(self, active_only: bool = False) -> List[Product]:
        """List products, optionally only active ones"""
        filters = {"is_active": True} if active_only else {}
        return [Product.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def get_available_products(self, customer_type: CustomerType) -> List[Product]:
        """Active products a customer of the given type may open"""
        return [p for p in self.list_products(active_only=True) if p.allows(customer_type)]

    def deactivate_product(self, product_id: str, acting_user: Optional[str] = None) -> Product:
        """Stop offering a product for new accounts"""
        user = resolve_acting_user(acting_user)

        def operation() -> Product:
            self.storage.lock_record(self.table_name, product_id)
            product = self.get_product(product_id)
            product.is_active = False
            product.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, product.id, product.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_DEACTIVATED,
                entity_type="product",
                entity_id=product.id,
                metadata={"product_code": product.product_code},
                user_id=user
            )
            return product

        product = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Deactivated product {product.product_code}",
                   user_id=user, action="deactivate_product", resource=product.id)
        return product
