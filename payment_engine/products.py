"""
Products Module

Accounts list products at a price; another account buys one by paying
the price to the owner through the ledger.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import uuid

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface
from .errors import AccountNotFound, InvalidRequest, NotFound
from .ledger import Ledger, TransferResult
from .lockout import CredentialService
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount
from .storage import StorageRecord
from .transactions import TransactionStatus


@dataclass
class Product(StorageRecord):
    """
    Product offered by an account

    ``id`` is the globally unique product id used for purchases; ``sku`` is
    the owner's own product code, unique per owner.
    """
    owner_id: str
    sku: str
    price: Decimal

    def __post_init__(self):
        if self.price <= Decimal('0'):
            raise ValueError("Product price must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Product':
        data = dict(data)
        data['price'] = Decimal(data['price'])
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sku": self.sku,
            "owner_id": self.owner_id,
            "price": str(self.price),
        }


class ProductService:
    """Product catalogue and purchases"""

    def __init__(
        self,
        storage: AsyncStorageInterface,
        account_store: AccountStore,
        credentials: CredentialService,
        ledger: Ledger
    ):
        self.storage = storage
        self.account_store = account_store
        self.credentials = credentials
        self.ledger = ledger
        self.table_name = "products"
        self.logger = get_logger("payment_engine.products")

    async def get_product(self, product_id: str) -> Product:
        data = await self.storage.load(self.table_name, product_id)
        if not data:
            raise NotFound("Product not found", product_id=product_id)
        return Product.from_dict(data)

    async def add_product(self, owner_id: str, sku: str, price: AmountLike) -> Tuple[Product, bool]:
        """
        Add a product, or re-price it if the owner already lists this sku

        Returns:
            (product, created)
        """
        if not sku or price is None:
            raise InvalidRequest("Product ID and price are required")
        price = to_positive_amount(price)
        if not await self.account_store.find_by_id(owner_id):
            raise NotFound("User not found.", account_id=owner_id)

        now = datetime.now(timezone.utc)
        product = await self.find_by_owner(owner_id, sku)
        if product:
            product.price = price
            product.updated_at = now
            created = False
        else:
            product = Product(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                sku=sku,
                price=price,
            )
            created = True

        await self.storage.save(self.table_name, product.id, product.to_dict())
        log_action(
            self.logger, "info", "Product added" if created else "Product price updated",
            user_id=owner_id, action="add_product", resource=f"product:{product.id}",
            extra={"sku": sku, "price": str(price)}
        )
        return product, created

    async def purchase_product(self, buyer_id: str, product_id: str,
                               password: str, payment_pin: str) -> TransferResult:
        """
        Pay the product price from the buyer to the product owner

        The buyer's password and PIN are both verified through their lockout
        flows before any balance moves.

        Raises:
            InvalidRequest: Missing credentials or buying one's own product
            NotFound: Unknown product, buyer or owner
            AccountLocked, InvalidCredential, InvalidPin: Verification failed
            InsufficientFunds: Buyer balance below price
        """
        if not buyer_id or not password or not payment_pin:
            raise InvalidRequest("Sender ID, password, and payment PIN are required")

        product = await self.get_product(product_id)
        if not await self.account_store.find_by_id(buyer_id):
            raise AccountNotFound(buyer_id)
        if not await self.account_store.find_by_id(product.owner_id):
            raise AccountNotFound(product.owner_id)
        if product.owner_id == buyer_id:
            raise InvalidRequest("You cannot buy your own product")

        await self.credentials.verify_password(buyer_id, password)
        await self.credentials.verify_pin(buyer_id, payment_pin)

        result = await self.ledger.transfer(
            buyer_id, product.owner_id, product.price, TransactionStatus.SUCCESS
        )
        log_action(
            self.logger, "info", "Product purchased",
            user_id=buyer_id, action="purchase_product", resource=f"product:{product.id}",
            extra={"transaction_id": result.transaction.id, "price": str(product.price)}
        )
        return result

    async def find_by_owner(self, owner_id: str, sku: str) -> Optional[Product]:
        matches = await self.storage.find(self.table_name, {"owner_id": owner_id, "sku": sku})
        return Product.from_dict(matches[0]) if matches else None
