from __future__ import annotations

from typing import Iterable, Optional

from farmledger.domain.errors import NotFoundError, ValidationError
from farmledger.domain.models import Farm, FarmMode, Product, ProductCategory

# Borrower category -> lender category. One level only: a lender never borrows.
LENDER_CATEGORY: dict[ProductCategory, ProductCategory] = {
    ProductCategory.SIMPLE: ProductCategory.PRINTABLE,
}


class Catalog:
    def __init__(self, source=None, farms: Iterable[Farm] = (), products: Iterable[Product] = ()):
        self.source = source
        self._farms: dict[str, Farm] = {f.id: f for f in farms}
        self._products: dict[str, Product] = {p.id: p for p in products}

    def reload(self) -> None:
        if self.source is None:
            return
        self._products = {p.id: p for p in self.source.list_products()}
        self._farms = {f.id: f for f in self.source.list_farms()}

    def add_farm(self, farm: Farm) -> None:
        self._farms[farm.id] = farm

    def add_product(self, product: Product) -> None:
        self._products[product.id] = product

    def farms(self) -> list[Farm]:
        return list(self._farms.values())

    def get_farm(self, farm_id: str) -> Farm:
        farm = self._farms.get(farm_id)
        if not farm:
            raise NotFoundError(f"Farm not found: {farm_id}")
        return farm

    def get_product(self, product_id: str) -> Product:
        product = self._products.get(product_id)
        if not product:
            raise NotFoundError(f"Product not found: {product_id}")
        return product

    def product_name(self, product_id: Optional[str]) -> str:
        if not product_id:
            return ""
        product = self._products.get(product_id)
        return product.name if product else product_id

    def mode_for(self, farm_id: str) -> FarmMode:
        return self.get_farm(farm_id).mode

    def ensure_farm_product(self, farm_id: str, product_id: str) -> Product:
        farm = self.get_farm(farm_id)
        product = self.get_product(product_id)
        if not farm.active:
            raise ValidationError(f"Farm {farm.name} is inactive.")
        if farm.product_ids and product_id not in farm.product_ids:
            raise ValidationError(f"Product {product.name} is not assigned to farm {farm.name}.")
        return product

    def lender_for(self, farm_id: str, product_id: str) -> Optional[Product]:
        borrower = self.get_product(product_id)
        lender_category = LENDER_CATEGORY.get(borrower.category)
        if lender_category is None:
            return None
        farm = self.get_farm(farm_id)
        candidates = farm.product_ids or tuple(self._products)
        for pid in candidates:
            product = self._products.get(pid)
            if product and product.id != product_id and product.category == lender_category:
                return product
        return None
