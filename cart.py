"""
Cart engine.

One live cart per user. Every mutation re-derives the totals from the line
items with ``compute_totals`` before the document is written, and writes
are guarded by a ``version`` compare-and-swap so two racing requests for
the same cart cannot silently overwrite each other.
"""
import logging
import math
from decimal import Decimal
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogStore, effective_price
from database import now, serialize_doc, to_object_id
from errors import Conflict, Inactive, InsufficientStock, InvalidId, InvalidQuantity, NotFound
from schemas import Cart

logger = logging.getLogger(__name__)


def empty_cart() -> dict:
    """Read-only projection returned when a user has no cart. Never persisted."""
    return {
        "items": [],
        "total_items": 0,
        "total_amount": 0,
        "discount_amount": 0,
        "final_amount": 0,
    }


def valid_amount(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return float(value)


def to_decimal(value) -> Decimal:
    return Decimal(str(value))


def compute_totals(items: List[dict], discount_amount=0) -> dict:
    """Derive cart totals from its line items.

    Sums are taken in Decimal so they are exact for amounts in whole cents.
    A discount that is not a usable number counts as zero, so the final
    amount falls back to the total amount.
    """
    total_items = sum(item["quantity"] for item in items)
    total_amount = sum((to_decimal(item["total_price"]) for item in items), Decimal(0))
    discount = valid_amount(discount_amount)
    if discount is None:
        discount = 0.0
    return {
        "total_items": total_items,
        "total_amount": float(total_amount),
        "discount_amount": discount,
        "final_amount": float(total_amount - to_decimal(discount)),
    }


def _line_total(price: float, quantity: int) -> float:
    return float(to_decimal(price) * quantity)


class CartEngine:
    def __init__(self, db: Database, catalog: Optional[CatalogStore] = None):
        self.db = db
        self.carts = db["cart"]
        self.catalog = catalog or CatalogStore(db)

    def find_cart(self, user_id: str) -> Optional[dict]:
        return self.carts.find_one({"user_id": user_id})

    def get_cart(self, user_id: str) -> dict:
        cart = self.find_cart(user_id)
        if not cart:
            return empty_cart()
        return self.project(cart)

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> dict:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidQuantity(quantity)
        product = self.catalog.find_product(product_id)
        if not product:
            raise NotFound("Product", product_id)
        if not product.get("is_active", True):
            raise Inactive("Product")

        key = str(product["_id"])
        cart = self.find_cart(user_id) or {"user_id": user_id, "items": [], "discount_amount": 0}
        existing = next((item for item in cart["items"] if item["product_id"] == key), None)
        requested = quantity + (existing["quantity"] if existing else 0)
        stock = product.get("stock", 0)
        if requested > stock:
            raise InsufficientStock(stock, requested)

        if existing:
            existing["quantity"] = requested
            existing["total_price"] = _line_total(existing["price"], requested)
        else:
            price = effective_price(product)
            cart["items"].append(
                {
                    "item_id": str(ObjectId()),
                    "product_id": key,
                    "quantity": quantity,
                    "price": price,
                    "total_price": _line_total(price, quantity),
                }
            )
        return self._save(cart)

    def update_item(self, user_id: str, item_id: str, quantity: int) -> dict:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidQuantity(quantity)
        cart = self.find_cart(user_id)
        if not cart:
            raise NotFound("Cart")
        line = self._find_line(cart, item_id)
        product = self.catalog.find_product(line["product_id"])
        if not product:
            raise NotFound("Product", line["product_id"])
        stock = product.get("stock", 0)
        if quantity > stock:
            raise InsufficientStock(stock, quantity)

        line["quantity"] = quantity
        line["total_price"] = _line_total(line["price"], quantity)
        return self._save(cart)

    def remove_item(self, user_id: str, item_id: str) -> Optional[dict]:
        """Drop a line. Returns the updated cart, or None when the cart was emptied and deleted."""
        cart = self.find_cart(user_id)
        if not cart:
            raise NotFound("Cart")
        line = self._find_line(cart, item_id)
        cart["items"].remove(line)
        if not cart["items"]:
            self.carts.delete_one({"_id": cart["_id"]})
            return None
        return self._save(cart)

    def clear(self, user_id: str) -> None:
        result = self.carts.delete_one({"user_id": user_id})
        if result.deleted_count == 0:
            raise NotFound("Cart")

    def project(self, cart: Optional[dict]) -> dict:
        """Cart as returned to clients, each line populated with live product details."""
        if not cart:
            return empty_cart()
        doc = serialize_doc(cart)
        for item in doc["items"]:
            product = None
            try:
                found = self.catalog.products.find_one({"_id": to_object_id(item["product_id"])})
            except InvalidId:
                found = None
            if found:
                product = {
                    "_id": str(found["_id"]),
                    "name": found.get("name"),
                    "price": found.get("price"),
                    "discounted_price": found.get("discounted_price"),
                    "images": found.get("images", []),
                }
            item["product"] = product
        return doc

    def _find_line(self, cart: dict, item_id: str) -> dict:
        line = next((item for item in cart["items"] if item["item_id"] == item_id), None)
        if line is None:
            raise NotFound("Cart item", item_id)
        return line

    def _save(self, cart: dict) -> dict:
        totals = compute_totals(cart["items"], cart.get("discount_amount", 0))
        document = Cart(user_id=cart["user_id"], items=cart["items"], **totals)
        fields = {**document.model_dump(exclude={"user_id", "version"}), "updated_at": now()}

        if "_id" not in cart:
            doc = {"user_id": cart["user_id"], **fields, "version": 0, "created_at": fields["updated_at"]}
            try:
                result = self.carts.insert_one(doc)
            except DuplicateKeyError:
                raise Conflict("Cart was created concurrently, please retry")
            return self.carts.find_one({"_id": result.inserted_id})

        result = self.carts.update_one(
            {"_id": cart["_id"], "version": cart.get("version")},
            {"$set": fields, "$inc": {"version": 1}},
        )
        if result.matched_count == 0:
            logger.warning(f"Lost cart update race for user {cart['user_id']}")
            raise Conflict("Cart was modified concurrently, please retry")
        return self.carts.find_one({"_id": cart["_id"]})
