"""
Order lifecycle: placement from a cart or item list, admin status changes,
cancellation with restock, and public tracking.

Stock moves only through single-document atomic updates. Reserving a line
is `stock -= qty` guarded by `stock >= qty`; if any line of an order cannot
be reserved, lines already reserved for that order are put back before the
placement fails, so a rejected order leaves stock, cart and orders untouched.
"""
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

import config
from cart import CartManager
from database import create_document, object_id, paginate, to_str_id, utcnow
from errors import Forbidden, InsufficientStock, InvalidTransition, InvalidValue, NotFound, ValidationError
from schemas import OrderItem, OrderStatus, PaymentStatus, ShippingAddress

logger = logging.getLogger(__name__)

STATUS_FLOW = [OrderStatus.pending, OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered]
CANCELLABLE = {OrderStatus.pending.value, OrderStatus.processing.value}
DEFAULT_CANCEL_REASON = "User requested cancellation"
ADMIN_CANCEL_REASON = "Cancelled by admin"

# (status, label, days after placement, description)
TRACKING_MILESTONES = [
    (OrderStatus.pending, "Order Placed", 0, "Your order has been placed successfully"),
    (OrderStatus.processing, "Processing", 1, "Your order is being processed"),
    (OrderStatus.shipped, "Shipped", 2, "Your order has been shipped"),
    (OrderStatus.delivered, "Delivered", 7, "Your order has been delivered"),
]


def _line_requests(items) -> "OrderedDict[str, int]":
    requested = OrderedDict()
    for item in items:
        if isinstance(item, dict):
            product_id, quantity = item["product_id"], item["quantity"]
        else:
            product_id, quantity = item.product_id, item.quantity
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        requested[product_id] = requested.get(product_id, 0) + quantity
    return requested


class OrderEngine:
    def __init__(self, db, carts: Optional[CartManager] = None):
        self.db = db
        self.carts = carts or CartManager(db)

    # Placement

    def place(self, user_id: str, items: Optional[list], shipping_address: ShippingAddress,
              payment_method: str = "card") -> dict:
        if items is None:
            items = [{"product_id": line["product_id"], "quantity": line["quantity"]} for line in self.carts.lines(user_id)]
        if not items:
            raise ValidationError("Items are required")
        if shipping_address is None:
            raise ValidationError("Shipping information is required")

        lines = self._price_lines(items)
        total_price = round(sum(line.total for line in lines), 2)

        self._reserve_stock(lines)
        now = utcnow()
        try:
            order_id = create_document(self.db, "order", {
                "user_id": user_id,
                "items": [line.model_dump() for line in lines],
                "shipping_address": shipping_address.model_dump(),
                "total_price": total_price,
                "payment_method": payment_method,
                "status": OrderStatus.pending.value,
                "payment_status": PaymentStatus.pending.value,
                "tracking_number": None,
                "cancellation_reason": None,
                "estimated_delivery": now + timedelta(days=config.ESTIMATED_DELIVERY_DAYS),
            })
        except Exception:
            self._release_stock(lines)
            raise

        self.carts.clear(user_id)
        logger.info("Order %s placed by %s: %d line(s), total %.2f", order_id, user_id, len(lines), total_price)
        return self._load(order_id)

    def _price_lines(self, items) -> List[OrderItem]:
        """Snapshot each requested line at the current product price."""
        lines = []
        for product_id, quantity in _line_requests(items).items():
            product = self.db["product"].find_one({"_id": object_id(product_id, "Product"), "approved": True})
            if not product:
                raise NotFound(f"Product {product_id} not found")
            stock = product.get("stock", 0)
            if stock < quantity:
                raise InsufficientStock(f"Insufficient stock for {product['title']}. Available: {stock}")
            price = product["price"]
            lines.append(OrderItem(
                product_id=product_id,
                product_title=product["title"],
                product_image=product.get("image_url"),
                price=price,
                quantity=quantity,
                total=round(price * quantity, 2),
            ))
        return lines

    def _reserve_stock(self, lines: List[OrderItem]):
        reserved = []
        for line in lines:
            updated = self.db["product"].find_one_and_update(
                {"_id": object_id(line.product_id, "Product"), "approved": True, "stock": {"$gte": line.quantity}},
                {"$inc": {"stock": -line.quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                self._release_stock(reserved)
                raise InsufficientStock(f"Insufficient stock for {line.product_title}")
            reserved.append(line)

    def _release_stock(self, lines: List[OrderItem]):
        for line in lines:
            res = self.db["product"].update_one(
                {"_id": object_id(line.product_id, "Product")},
                {"$inc": {"stock": line.quantity}, "$set": {"updated_at": utcnow()}},
            )
            if res.matched_count == 0:
                logger.warning("Cannot restore %d unit(s) of deleted product %s", line.quantity, line.product_id)

    # Reads

    def _load(self, order_id: str) -> dict:
        doc = self.db["order"].find_one({"_id": object_id(order_id, "Order")})
        if not doc:
            raise NotFound("Order not found")
        return to_str_id(doc)

    def get(self, actor, order_id: str) -> dict:
        order = self._load(order_id)
        if not actor.is_admin and order["user_id"] != actor.id:
            raise NotFound("Order not found")
        return order

    def _page(self, query: dict, page: int, limit: int):
        if page < 1 or limit < 1 or limit > 100:
            raise ValidationError("Invalid pagination parameters")
        total = self.db["order"].count_documents(query)
        cursor = (
            self.db["order"].find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return [to_str_id(d) for d in cursor], paginate(page, limit, total)

    def list_for_user(self, user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        query = {"user_id": user_id}
        if status:
            query["status"] = status
        orders, pagination = self._page(query, page, limit)
        return {"orders": orders, "pagination": pagination}

    def list_all(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
        query = {}
        if status:
            query["status"] = status
        orders, pagination = self._page(query, page, limit)
        for order in orders:
            customer = None
            if ObjectId.is_valid(order["user_id"]):
                customer = self.db["user"].find_one({"_id": ObjectId(order["user_id"])}, {"full_name": 1, "email": 1})
            order["users"] = {
                "full_name": customer.get("full_name") if customer else None,
                "email": customer.get("email") if customer else None,
            }
        return {"orders": orders, "pagination": pagination}

    def has_purchased(self, user_id: str, product_id: str) -> bool:
        return self.db["order"].count_documents({
            "user_id": user_id,
            "items.product_id": product_id,
            "status": {"$ne": OrderStatus.cancelled.value},
        }) > 0

    # Transitions

    def cancel(self, actor, order_id: str, reason: Optional[str] = None) -> dict:
        order = self._load(order_id)
        if not actor.is_admin and order["user_id"] != actor.id:
            raise Forbidden("Not allowed to cancel this order")
        if order["status"] not in CANCELLABLE:
            raise InvalidTransition(f"Cannot cancel an order that is {order['status']}")

        updated = self.db["order"].find_one_and_update(
            {"_id": object_id(order_id, "Order"), "status": {"$in": sorted(CANCELLABLE)}},
            {"$set": {
                "status": OrderStatus.cancelled.value,
                "cancellation_reason": reason or DEFAULT_CANCEL_REASON,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidTransition("Order can no longer be cancelled")

        self._release_stock([OrderItem(**item) for item in updated["items"]])
        logger.info("Order %s cancelled by %s", order_id, actor.id)
        return to_str_id(updated)

    def set_status(self, actor, order_id: str, status: str, tracking_number: Optional[str] = None,
                   reason: Optional[str] = None) -> dict:
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise InvalidValue("Invalid status")
        order = self._load(order_id)

        if new_status == OrderStatus.cancelled:
            updated = self.cancel(actor, order_id, reason or ADMIN_CANCEL_REASON)
            if tracking_number:
                self.db["order"].update_one({"_id": object_id(order_id, "Order")}, {"$set": {"tracking_number": tracking_number}})
                updated["tracking_number"] = tracking_number
            return updated

        current = order["status"]
        if current == OrderStatus.cancelled.value:
            raise InvalidTransition("Order is cancelled")
        if STATUS_FLOW.index(new_status) < STATUS_FLOW.index(OrderStatus(current)):
            raise InvalidTransition(f"Cannot move order from {current} to {new_status.value}")

        update = {"status": new_status.value, "updated_at": utcnow()}
        if tracking_number:
            update["tracking_number"] = tracking_number
        updated = self.db["order"].find_one_and_update(
            {"_id": object_id(order_id, "Order"), "status": current},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise InvalidTransition("Order status changed concurrently")
        logger.info("Order %s moved from %s to %s", order_id, current, new_status.value)
        return to_str_id(updated)

    def set_payment_status(self, order_id: str, payment_status: str) -> dict:
        try:
            new_status = PaymentStatus(payment_status)
        except ValueError:
            raise InvalidValue("Invalid payment status")
        updated = self.db["order"].find_one_and_update(
            {"_id": object_id(order_id, "Order")},
            {"$set": {"payment_status": new_status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFound("Order not found")
        return to_str_id(updated)

    # Tracking

    def track(self, tracking_number: str) -> dict:
        """Milestones derived from the current status at fixed offsets from
        creation. These dates are illustrative, not recorded event times."""
        order = self.db["order"].find_one({"tracking_number": tracking_number})
        if not order:
            raise NotFound("Order not found")
        created_at = order["created_at"]
        status = order["status"]

        history = []
        if status == OrderStatus.cancelled.value:
            history.append(self._milestone(TRACKING_MILESTONES[0], created_at))
            history.append({
                "status": "Cancelled",
                "date": order.get("updated_at", created_at),
                "description": "Your order has been cancelled",
            })
        else:
            reached = STATUS_FLOW.index(OrderStatus(status))
            for milestone in TRACKING_MILESTONES[:reached + 1]:
                history.append(self._milestone(milestone, created_at))

        return {
            "order_id": str(order["_id"]),
            "tracking_number": order["tracking_number"],
            "current_status": status,
            "estimated_delivery": order.get("estimated_delivery"),
            "tracking_history": history,
        }

    @staticmethod
    def _milestone(milestone, created_at) -> dict:
        _, label, days, description = milestone
        return {"status": label, "date": created_at + timedelta(days=days), "description": description}
