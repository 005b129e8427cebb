"""
Order engine.

Turns a user's cart into an order snapshot, owns the order status machine
and keeps product stock in step with it:

- creating an order takes the ordered quantities out of stock
- moving an order to CANCELLED or RETURNED puts them back

Restoration is tracked per order item in ``restocked_items`` so a retry
(``restock_order``) never returns the same units twice.
"""
import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Union

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from cart import CartEngine, to_decimal, valid_amount
from catalog import CatalogStore
from database import create_document, now, serialize_doc, to_object_id
from errors import AlreadyPaid, Conflict, EmptyCart, Forbidden, InvalidId, InvalidState, NotFound, Required
from schemas import (
    CurrentUser,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentResult,
    ShippingAddress,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

RESTOCK_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})
USER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def order_total(items_price: float, shipping_price: float, tax_price: float, discount_price: float) -> float:
    total = to_decimal(items_price) + to_decimal(shipping_price) + to_decimal(tax_price) - to_decimal(discount_price)
    return float(total)


def order_number(order_id) -> str:
    return f"ORD-{str(order_id)[-6:].upper()}"


class OrderEngine:
    def __init__(
        self,
        db: Database,
        catalog: Optional[CatalogStore] = None,
        carts: Optional[CartEngine] = None,
    ):
        self.db = db
        self.orders = db["order"]
        self.catalog = catalog or CatalogStore(db)
        self.carts = carts or CartEngine(db, self.catalog)

    # --------- Creation ---------

    def create_order(
        self,
        user: CurrentUser,
        shipping_address: Union[ShippingAddress, dict],
        payment_method: Union[PaymentMethod, str] = PaymentMethod.COD,
        shipping_price: float = 0,
        tax_price: float = 0,
        notes: Optional[str] = None,
    ) -> dict:
        cart = self.carts.find_cart(user.id)
        if not cart or not cart.get("items"):
            raise EmptyCart()

        order_items = [self._snapshot(line) for line in cart["items"]]
        items_price = cart.get("total_amount", 0)
        discount_price = valid_amount(cart.get("discount_amount")) or 0.0
        if isinstance(shipping_address, dict):
            shipping_address = ShippingAddress(**shipping_address)

        order = Order(
            user_id=user.id,
            order_items=order_items,
            shipping_address=shipping_address,
            payment_method=PaymentMethod(payment_method),
            items_price=items_price,
            shipping_price=shipping_price,
            tax_price=tax_price,
            discount_price=discount_price,
            total_price=order_total(items_price, shipping_price, tax_price, discount_price),
            is_paid=False,
            notes=notes,
        )
        order_id = create_document("order", order.model_dump(mode="json"), database=self.db)
        logger.info(f"Order {order_number(order_id)} created for user {user.id}: total {order.total_price}")

        # not a transaction: the order exists before stock moves, so a crash
        # here leaves stock high rather than an order without a snapshot
        for line in cart["items"]:
            try:
                remaining = self.catalog.decrement_stock(line["product_id"], line["quantity"])
            except (Conflict, PyMongoError):
                logger.exception(f"Stock decrement failed for product {line['product_id']} on order {order_id}")
                continue
            if remaining is None:
                logger.warning(f"Product {line['product_id']} vanished before stock decrement on order {order_id}")

        self.db["cart"].delete_one({"_id": cart["_id"]})
        return self.find_order(order_id)

    def _snapshot(self, line: dict) -> OrderItem:
        try:
            product = self.catalog.find_product(line["product_id"])
        except InvalidId:
            product = None
        product = product or {}
        images = product.get("images") or []
        return OrderItem(
            item_id=line["item_id"],
            product_id=line["product_id"],
            name=product.get("name", ""),
            quantity=line["quantity"],
            price=line["price"],
            image=images[0] if images else "",
            total_price=line["total_price"],
        )

    # --------- Reads ---------

    def get_order(self, user: CurrentUser, order_id: str) -> dict:
        order = self.find_order(order_id)
        self._check_access(user, order, "Not authorized to access this order")
        return order

    def list_mine(self, user: CurrentUser) -> List[dict]:
        return list(self.orders.find({"user_id": user.id}).sort("created_at", -1))

    def list_all(self) -> dict:
        orders = list(self.orders.find({}).sort("created_at", -1))
        return {
            "count": len(orders),
            "total_amount": float(sum((to_decimal(o.get("total_price", 0)) for o in orders), Decimal(0))),
            "orders": orders,
        }

    # --------- Lifecycle ---------

    def update_status(self, order_id: str, new_status: Union[OrderStatus, str], reason: Optional[str] = None) -> dict:
        order = self.find_order(order_id)
        return self._transition(order, OrderStatus(new_status), reason)

    def cancel_order(self, user: CurrentUser, order_id: str, reason: Optional[str] = None) -> dict:
        order = self.find_order(order_id)
        self._check_access(user, order, "Not authorized to cancel this order")
        current = OrderStatus(order["order_status"])
        if current not in USER_CANCELLABLE:
            raise InvalidState(f"Order cannot be cancelled in {current.value} status")
        return self._transition(order, OrderStatus.CANCELLED, reason or "Cancelled by user")

    def mark_paid(
        self,
        order_id: str,
        payment_result: Union[PaymentResult, dict, None] = None,
        payment_intent_id: Optional[str] = None,
    ) -> dict:
        """Record a payment.

        With ``payment_intent_id`` the write only lands on an unpaid order
        whose stored gateway intent matches, so a gateway payment settles
        exactly one order, once.
        """
        order = self.find_order(order_id)
        if isinstance(payment_result, PaymentResult):
            payment_result = payment_result.model_dump()
        updates = {
            "is_paid": True,
            "paid_at": now(),
            "payment_result": payment_result,
            "updated_at": now(),
        }
        if order.get("payment_method") == PaymentMethod.COD.value:
            updates["payment_method"] = PaymentMethod.ONLINE.value

        query = {"_id": order["_id"]}
        if payment_intent_id is not None:
            query.update({"is_paid": False, "payment_intent_id": payment_intent_id})
        result = self.orders.update_one(query, {"$set": updates})
        if result.matched_count == 0:
            raise AlreadyPaid(str(order["_id"]))
        logger.info(f"Order {order_number(order['_id'])} marked as paid")
        return self.find_order(order_id)

    def attach_payment_intent(self, order_id, payment_intent_id: str) -> None:
        self.orders.update_one(
            {"_id": to_object_id(order_id)},
            {"$set": {"payment_intent_id": payment_intent_id, "updated_at": now()}},
        )

    def add_tracking(self, order_id: str, tracking_number: Optional[str]) -> dict:
        if not tracking_number or not tracking_number.strip():
            raise Required("Tracking number")
        order = self.find_order(order_id)
        updates = {"tracking_number": tracking_number.strip(), "updated_at": now()}
        if order.get("order_status") == OrderStatus.PROCESSING.value:
            updates["order_status"] = OrderStatus.SHIPPED.value
        result = self.orders.update_one(
            {"_id": order["_id"], "order_status": order.get("order_status")},
            {"$set": updates},
        )
        if result.matched_count == 0:
            raise Conflict("Order status was changed concurrently, please retry")
        return self.find_order(order_id)

    def restock_order(self, order_id: str) -> dict:
        """Retry stock restoration for items of a cancelled or returned order that were missed."""
        order = self.find_order(order_id)
        if OrderStatus(order["order_status"]) not in RESTOCK_STATUSES:
            raise InvalidState("Only cancelled or returned orders can be restocked")
        self._restore_stock(order)
        return self.find_order(order_id)

    def _transition(self, order: dict, target: OrderStatus, reason: Optional[str]) -> dict:
        current = OrderStatus(order["order_status"])
        if not can_transition(current, target):
            raise InvalidState(f"Cannot change order status from {current.value} to {target.value}")

        updates = {"order_status": target.value, "updated_at": now()}
        if target == OrderStatus.DELIVERED:
            updates["is_delivered"] = True
            updates["delivered_at"] = now()
        if target == OrderStatus.CANCELLED and reason:
            updates["cancel_reason"] = reason
        if target == OrderStatus.RETURNED and reason:
            updates["return_reason"] = reason

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "order_status": current.value},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Order status was changed concurrently, please retry")
        logger.info(f"Order {order_number(order['_id'])} moved {current.value} -> {target.value}")

        if target in RESTOCK_STATUSES:
            self._restore_stock(updated)
        return self.find_order(order["_id"])

    def _restore_stock(self, order: dict) -> int:
        restored = 0
        for item in order.get("order_items", []):
            item_id = item["item_id"]
            claim = self.orders.update_one(
                {"_id": order["_id"], "restocked_items": {"$ne": item_id}},
                {"$addToSet": {"restocked_items": item_id}},
            )
            if claim.modified_count == 0:
                continue
            try:
                found = self.catalog.increment_stock(item["product_id"], item["quantity"])
            except PyMongoError:
                logger.exception(
                    f"Stock restoration failed for product {item['product_id']} on order {order['_id']}; "
                    f"retry with restock"
                )
                self.orders.update_one({"_id": order["_id"]}, {"$pull": {"restocked_items": item_id}})
                continue
            if not found:
                logger.warning(f"Product {item['product_id']} no longer exists; nothing to restock")
                continue
            restored += 1
        return restored

    # --------- Helpers ---------

    def find_order(self, order_id) -> dict:
        order = self.orders.find_one({"_id": to_object_id(order_id)})
        if not order:
            raise NotFound("Order", str(order_id))
        return order

    @staticmethod
    def _check_access(user: CurrentUser, order: dict, message: str) -> None:
        if order.get("user_id") != user.id and not user.is_admin:
            raise Forbidden(message)

    @staticmethod
    def present(order: dict) -> dict:
        doc = serialize_doc(order)
        doc["order_number"] = order_number(order["_id"])
        return doc
