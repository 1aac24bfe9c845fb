import logging
from typing import List, Tuple

from pymongo import DESCENDING

from database import object_id, utcnow
from errors import InsufficientStock, NotFound, ValidationError

logger = logging.getLogger(__name__)


def serialize_line(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "user_id": doc["user_id"],
        "product_id": doc["product_id"],
        "quantity": doc["quantity"],
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


class CartManager:
    """Per-user cart lines, unique per (user, product)."""

    def __init__(self, db):
        self.db = db

    def _visible_product(self, product_id: str) -> dict:
        product = self.db["product"].find_one({"_id": object_id(product_id, "Product"), "approved": True})
        if not product:
            raise NotFound("Product not found")
        return product

    def add(self, user_id: str, product_id: str, quantity: int = 1) -> Tuple[dict, bool]:
        """Create or increment a line. Returns the line and whether it was created."""
        if quantity < 1:
            raise ValidationError("Quantity must be greater than 0")
        product = self._visible_product(product_id)
        stock = product.get("stock", 0)

        existing = self.db["cart_item"].find_one({"user_id": user_id, "product_id": product_id})
        if existing:
            new_quantity = existing["quantity"] + quantity
            if new_quantity > stock:
                raise InsufficientStock("Not enough stock available")
            self.db["cart_item"].update_one(
                {"_id": existing["_id"]},
                {"$set": {"quantity": new_quantity, "updated_at": utcnow()}},
            )
            existing.update(quantity=new_quantity)
            return serialize_line(existing), False

        if quantity > stock:
            raise InsufficientStock("Insufficient stock")
        now = utcnow()
        doc = {
            "user_id": user_id,
            "product_id": product_id,
            "quantity": quantity,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = self.db["cart_item"].insert_one(doc).inserted_id
        return serialize_line(doc), True

    def update(self, user_id: str, line_id: str, quantity: int) -> dict:
        if quantity < 1:
            raise ValidationError("Valid quantity is required")
        line = self.db["cart_item"].find_one({"_id": object_id(line_id, "Cart item"), "user_id": user_id})
        if not line:
            raise NotFound("Cart item not found")
        product = self.db["product"].find_one({"_id": object_id(line["product_id"], "Product")})
        if not product:
            raise NotFound("Product not found")
        if quantity > product.get("stock", 0):
            raise InsufficientStock("Not enough stock available")
        now = utcnow()
        self.db["cart_item"].update_one({"_id": line["_id"]}, {"$set": {"quantity": quantity, "updated_at": now}})
        line.update(quantity=quantity, updated_at=now)
        return serialize_line(line)

    def remove(self, user_id: str, line_id: str):
        res = self.db["cart_item"].delete_one({"_id": object_id(line_id, "Cart item"), "user_id": user_id})
        if res.deleted_count == 0:
            raise NotFound("Cart item not found")

    def clear(self, user_id: str) -> int:
        return self.db["cart_item"].delete_many({"user_id": user_id}).deleted_count

    def lines(self, user_id: str) -> List[dict]:
        return list(self.db["cart_item"].find({"user_id": user_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))

    def list(self, user_id: str) -> dict:
        total_items = 0
        total_price = 0.0
        total_savings = 0.0
        cart_items = []

        for line in self.lines(user_id):
            product = self.db["product"].find_one({"_id": object_id(line["product_id"], "Product")})
            if not product:
                continue
            price = product.get("price", 0.0)
            original_price = product.get("original_price")
            item_total = round(price * line["quantity"], 2)
            item_savings = round((original_price - price) * line["quantity"], 2) if original_price else 0.0

            total_items += line["quantity"]
            total_price += item_total
            total_savings += item_savings

            cart_items.append({
                "id": str(line["_id"]),
                "product_id": line["product_id"],
                "quantity": line["quantity"],
                "product": {
                    "id": str(product["_id"]),
                    "title": product.get("title"),
                    "price": price,
                    "original_price": original_price,
                    "image_url": product.get("image_url"),
                    "stock": product.get("stock", 0),
                    "discount_percentage": product.get("discount_percentage", 0),
                },
                "item_total": item_total,
                "item_savings": item_savings,
            })

        total_price = round(total_price, 2)
        return {
            "cart_items": cart_items,
            "summary": {
                "total_items": total_items,
                "total_price": total_price,
                "total_savings": round(total_savings, 2),
                "final_total": total_price,
            },
        }
