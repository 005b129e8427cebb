"""
Catalog store: products and categories.

Besides the admin CRUD used by the routes, this module owns the stock
adjustment primitives the cart and order engines call. Stock changes are
single-document atomic updates so concurrent orders for the same product
cannot drive stock below zero.
"""
import logging
import math
import re
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now, serialize_doc, to_object_id
from errors import Conflict, InvalidId, InvalidState, NotFound, Required
from schemas import Category, CategoryUpdate, Product, ProductUpdate, StockEntry

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 10

PRODUCT_SORTS = {
    "price-asc": ("price", 1),
    "price-desc": ("price", -1),
    "newest": ("created_at", -1),
    "oldest": ("created_at", 1),
    "name-asc": ("name", 1),
    "name-desc": ("name", -1),
    "stock-asc": ("stock", 1),
    "stock-desc": ("stock", -1),
}


def effective_price(product: dict) -> float:
    """Unit price a buyer pays: the discounted price when set, else the list price."""
    discounted = product.get("discounted_price") or 0
    if discounted > 0:
        return float(discounted)
    return float(product.get("price", 0))


class CatalogStore:
    def __init__(self, db: Database):
        self.db = db
        self.products = db["product"]
        self.categories = db["category"]

    # --------- Products ---------

    def find_product(self, product_id: str) -> Optional[dict]:
        return self.products.find_one({"_id": to_object_id(product_id)})

    def get_product(self, product_id: str, active_only: bool = False) -> dict:
        product = self.find_product(product_id)
        if not product or (active_only and not product.get("is_active", True)):
            raise NotFound("Product", product_id)
        return product

    def add_product(self, payload: Product) -> dict:
        self._require_category(payload.category_id)
        data = payload.model_dump()
        data["name"] = data["name"].strip()
        if not data.get("discounted_price"):
            data["discounted_price"] = data["price"]
        inserted_id = create_document("product", data, database=self.db)
        logger.info(f"Product created: {inserted_id} ({data['name']})")
        return self.products.find_one({"_id": to_object_id(inserted_id)})

    def list_products(
        self,
        category_id: Optional[str] = None,
        featured: Optional[bool] = None,
        is_active: Optional[bool] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        if category_id:
            filt["category_id"] = category_id
        if featured is not None:
            filt["featured"] = featured
        if is_active is not None:
            filt["is_active"] = is_active
        if min_price is not None or max_price is not None:
            filt["price"] = {}
            if min_price is not None:
                filt["price"]["$gte"] = min_price
            if max_price is not None:
                filt["price"]["$lte"] = max_price
        if search:
            pattern = re.escape(search)
            filt["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]

        page = max(page, 1)
        limit = max(limit, 1)
        sort_field, direction = PRODUCT_SORTS.get(sort or "newest", PRODUCT_SORTS["newest"])
        cursor = (
            self.products.find(filt)
            .sort(sort_field, direction)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        products = [self._with_category(p) for p in cursor]
        total = self.products.count_documents(filt)
        total_pages = math.ceil(total / limit)
        return {
            "products": products,
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_products": total,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        }

    def update_product(self, product_id: str, payload: ProductUpdate) -> dict:
        product = self.get_product(product_id)
        updates = payload.model_dump(exclude_none=True)
        if "category_id" in updates:
            self._require_category(updates["category_id"])
        if "name" in updates:
            updates["name"] = updates["name"].strip()
        if not updates:
            return product
        updates["updated_at"] = now()
        return self.products.find_one_and_update(
            {"_id": product["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )

    def delete_product(self, product_id: str) -> None:
        product = self.get_product(product_id)
        # order items snapshot the product, but the id stays the audit link
        if self.db["order"].count_documents({"order_items.product_id": str(product["_id"])}, limit=1):
            raise InvalidState("Cannot delete a product that appears in orders. Deactivate it instead.")
        self.products.delete_one({"_id": product["_id"]})
        logger.info(f"Product deleted: {product_id}")

    def change_status(self, product_id: str, is_active: Optional[bool]) -> dict:
        if is_active is None:
            raise Required("is_active")
        product = self.get_product(product_id)
        return self.products.find_one_and_update(
            {"_id": product["_id"]},
            {"$set": {"is_active": is_active, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )

    def bulk_update_stock(self, entries: List[StockEntry]) -> List[dict]:
        applied = []
        for entry in entries:
            if not entry.id or entry.stock is None:
                continue
            try:
                oid = to_object_id(entry.id)
            except InvalidId:
                logger.warning(f"Skipping stock update for malformed id {entry.id!r}")
                continue
            product = self.products.find_one_and_update(
                {"_id": oid},
                {"$set": {"stock": entry.stock, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
            if not product:
                continue
            applied.append({"id": str(product["_id"]), "name": product.get("name"), "stock": product["stock"]})
        return applied

    def product_stats(self) -> Dict[str, Any]:
        total = self.products.count_documents({})
        active = self.products.count_documents({"is_active": True})
        featured = self.products.count_documents({"featured": True})
        low_stock = self.products.count_documents({"stock": {"$lt": LOW_STOCK_THRESHOLD}, "is_active": True})

        grouped = list(self.products.aggregate([{"$group": {"_id": "$category_id", "count": {"$sum": 1}}}]))
        names = {}
        ids = []
        for row in grouped:
            try:
                ids.append(to_object_id(row["_id"]))
            except InvalidId:
                continue
        for cat in self.categories.find({"_id": {"$in": ids}}):
            names[str(cat["_id"])] = cat["name"]
        by_category = [
            {"category": names[row["_id"]], "count": row["count"]}
            for row in grouped
            if row["_id"] in names
        ]
        return {
            "total_products": total,
            "active_products": active,
            "inactive_products": total - active,
            "featured_products": featured,
            "low_stock_products": low_stock,
            "products_by_category": by_category,
        }

    # --------- Stock ---------

    def decrement_stock(self, product_id: str, quantity: int) -> Optional[int]:
        """Take ``quantity`` units out of stock, flooring at zero.

        Returns the new stock, or None if the product no longer exists.
        """
        oid = to_object_id(product_id)
        for _ in range(3):
            doc = self.products.find_one_and_update(
                {"_id": oid, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return doc["stock"]
            doc = self.products.find_one_and_update(
                {"_id": oid, "stock": {"$lt": quantity}},
                {"$set": {"stock": 0, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                logger.warning(f"Stock for product {product_id} clamped at 0 (requested {quantity})")
                return 0
            if self.products.count_documents({"_id": oid}, limit=1) == 0:
                return None
        # stock kept moving between the two conditional updates
        raise Conflict(f"Stock for product {product_id} changed concurrently")

    def increment_stock(self, product_id: str, quantity: int) -> bool:
        result = self.products.update_one(
            {"_id": to_object_id(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now()}},
        )
        return result.matched_count == 1

    # --------- Categories ---------

    def find_category(self, category_id: str) -> Optional[dict]:
        return self.categories.find_one({"_id": to_object_id(category_id)})

    def get_category(self, category_id: str) -> dict:
        category = self.find_category(category_id)
        if not category:
            raise NotFound("Category", category_id)
        return self._with_parent(category)

    def create_category(self, payload: Category) -> dict:
        name = payload.name.strip()
        if self.categories.find_one({"name": name}):
            raise Conflict("Category with this name already exists")
        if payload.parent_id:
            if not self.find_category(payload.parent_id):
                raise NotFound("Parent category", payload.parent_id)
        data = payload.model_dump()
        data["name"] = name
        data["parent_id"] = payload.parent_id or None
        try:
            inserted_id = create_document("category", data, database=self.db)
        except DuplicateKeyError:
            raise Conflict("Category with this name already exists")
        logger.info(f"Category created: {inserted_id} ({name})")
        return self.get_category(inserted_id)

    def list_categories(
        self,
        is_active: Optional[bool] = None,
        parent_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[dict]:
        filt: Dict[str, Any] = {}
        if is_active is not None:
            filt["is_active"] = is_active
        if parent_id:
            filt["parent_id"] = None if parent_id == "null" else parent_id
        if search:
            filt["name"] = {"$regex": re.escape(search), "$options": "i"}
        return [self._with_parent(c) for c in self.categories.find(filt)]

    def update_category(self, category_id: str, payload: CategoryUpdate) -> dict:
        category = self.find_category(category_id)
        if not category:
            raise NotFound("Category", category_id)
        updates = payload.model_dump(exclude_none=True)

        if "name" in updates:
            updates["name"] = updates["name"].strip()
            if updates["name"] != category["name"] and self.categories.find_one({"name": updates["name"]}):
                raise Conflict("Category with this name already exists")

        if "parent_id" in updates:
            parent_id = updates["parent_id"]
            if parent_id == "null" or parent_id == "":
                updates["parent_id"] = None
            elif parent_id == str(category["_id"]):
                raise InvalidState("Category cannot be its own parent")
            elif not self.find_category(parent_id):
                raise NotFound("Parent category", parent_id)

        if updates:
            updates["updated_at"] = now()
            try:
                self.categories.update_one({"_id": category["_id"]}, {"$set": updates})
            except DuplicateKeyError:
                raise Conflict("Category with this name already exists")
        return self.get_category(category_id)

    def delete_category(self, category_id: str) -> None:
        category = self.find_category(category_id)
        if not category:
            raise NotFound("Category", category_id)
        key = str(category["_id"])
        if self.categories.count_documents({"parent_id": key}, limit=1):
            raise InvalidState(
                "Cannot delete category with child categories. Please delete or reassign child categories first."
            )
        if self.products.count_documents({"category_id": key}, limit=1):
            raise InvalidState(
                "Cannot delete category that is used in products. Please reassign products to another category first."
            )
        self.categories.delete_one({"_id": category["_id"]})
        logger.info(f"Category deleted: {category_id}")

    def category_tree(self) -> List[dict]:
        """Nest active categories under their parents.

        Built breadth-first from the roots with an explicit queue; categories
        whose parent is inactive or missing are left out, as are cycles.
        """
        children_of = defaultdict(list)
        for cat in self.categories.find({"is_active": True}):
            children_of[cat.get("parent_id") or None].append(cat)

        def node(cat: dict) -> dict:
            return {
                "_id": str(cat["_id"]),
                "name": cat["name"],
                "description": cat.get("description"),
                "image": cat.get("image"),
            }

        roots = [node(c) for c in children_of[None]]
        queue = deque(roots)
        while queue:
            current = queue.popleft()
            kids = [node(c) for c in children_of.get(current["_id"], [])]
            if kids:
                current["children"] = kids
                queue.extend(kids)
        return roots

    # --------- Helpers ---------

    def _require_category(self, category_id: str) -> dict:
        category = self.find_category(category_id)
        if not category:
            raise NotFound("Category", category_id)
        return category

    def _with_parent(self, category: dict) -> dict:
        doc = serialize_doc(category)
        parent = None
        if category.get("parent_id"):
            found = self.categories.find_one({"_id": to_object_id(category["parent_id"])})
            if found:
                parent = {"_id": str(found["_id"]), "name": found["name"]}
        doc["parent"] = parent
        return doc

    def _with_category(self, product: dict) -> dict:
        doc = serialize_doc(product)
        category = None
        try:
            found = self.find_category(product.get("category_id"))
        except InvalidId:
            found = None
        if found:
            category = {"_id": str(found["_id"]), "name": found["name"]}
        doc["category"] = category
        return doc
