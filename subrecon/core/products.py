"""
Product Catalog
===============

The product allow-list and per-product pricing.

Only product ids configured here may ever be granted entitlement, whatever
the platform says about the purchase.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from subrecon.config import Settings, settings
from subrecon.core.errors import InvalidArgumentError


@dataclass(frozen=True)
class Product:
    product_id: str
    plan_type: str
    amount: Decimal
    currency: str


class ProductCatalog:
    """Allow-listed products keyed by product id."""

    def __init__(self, products: list[Product]):
        self._products = {product.product_id: product for product in products}

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products

    def __len__(self) -> int:
        return len(self._products)

    @property
    def product_ids(self) -> list[str]:
        return list(self._products)

    def get(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def require(self, product_id: str) -> Product:
        """Return the product, or raise ``InvalidArgumentError`` if it is not allow-listed."""
        product = self._products.get(product_id)
        if product is None:
            raise InvalidArgumentError(
                f"Unknown product id: {product_id}",
                reason="unknown_product",
            )
        return product

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "ProductCatalog":
        """
        Build the catalog from ``ALLOWED_PRODUCT_IDS`` and ``PRODUCT_CATALOG``.

        Allow-listed ids without a catalog entry fall back to the id as plan
        type and a zero USD price.
        """
        priced: dict[str, Product] = {}
        for entry in config.PRODUCT_CATALOG.split(","):
            entry = entry.strip()
            if not entry:
                continue
            parts = [part.strip() for part in entry.split(":")]
            if len(parts) != 4:
                raise ValueError(f"Invalid PRODUCT_CATALOG entry: {entry!r}")
            product_id, plan_type, amount, currency = parts
            try:
                price = Decimal(amount)
            except InvalidOperation as e:
                raise ValueError(f"Invalid amount in PRODUCT_CATALOG entry: {entry!r}") from e
            priced[product_id] = Product(product_id, plan_type, price, currency.upper())

        products = [
            priced.get(product_id) or Product(product_id, product_id, Decimal("0"), "USD")
            for product_id in config.allowed_product_ids_list
        ]
        return cls(products)
