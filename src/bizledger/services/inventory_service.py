from __future__ import annotations

from bizledger.domain.errors import ValidationError, NotFoundError
from bizledger.domain.models import Product, StockLevel


class InventoryService:
    def __init__(self, repo):
        self.repo = repo

    def list_products(self) -> list[Product]:
        return self.repo.list_products()

    def search(self, query: str) -> list[Product]:
        return self.repo.search_products((query or "").strip())

    def list_stock(self) -> list[StockLevel]:
        return self.repo.list_stock()

    def low_stock(self, threshold: float = 10.0) -> list[StockLevel]:
        return [s for s in self.repo.list_stock() if s.quantity < threshold]

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product_by_id(int(product_id))
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def add_product(self, name: str, weight: float, price: float, stock: float = 0.0) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        if weight < 0:
            raise ValidationError("Weight must be >= 0.")
        if price < 0:
            raise ValidationError("Price must be >= 0.")
        if stock < 0:
            raise ValidationError("Stock must be >= 0.")
        return self.repo.add_product(name, float(weight), float(price), float(stock))

    def update_product(self, product_id: int, name: str, weight: float, price: float) -> None:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        if weight < 0 or price < 0:
            raise ValidationError("Weight and price must be >= 0.")
        updated = self.repo.update_product(int(product_id), name, float(weight), float(price))
        if not updated:
            raise NotFoundError("Product not found.")

    def delete_product(self, product_id: int) -> None:
        removed = self.repo.delete_product(int(product_id))
        if not removed:
            raise NotFoundError("Product not found.")

    def set_stock(self, product_id: int, quantity: float) -> float:
        if quantity < 0:
            raise ValidationError("Stock must be >= 0.")
        return self.repo.set_stock(int(product_id), float(quantity))

    def restock(self, product_id: int, qty: float) -> float:
        if qty <= 0:
            raise ValidationError("Quantity to add must be > 0.")
        return self.repo.adjust_stock(int(product_id), float(qty))

    def remove_stock(self, product_id: int, qty: float) -> float:
        if qty <= 0:
            raise ValidationError("Quantity to remove must be > 0.")
        return self.repo.adjust_stock(int(product_id), -float(qty))
