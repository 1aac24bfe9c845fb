import logging
import re
from typing import Optional

from pymongo import ASCENDING, DESCENDING

from database import create_document, object_id, paginate, to_str_id, utcnow
from errors import NotFound, ValidationError
from schemas import Product, ProductUpdate

logger = logging.getLogger(__name__)

SORT_FIELDS = {"created_at", "price", "rating", "title", "reviews_count", "discount_percentage"}
MAX_PAGE_SIZE = 100


def discount_percentage(price: float, original_price: Optional[float]) -> int:
    if not original_price:
        return 0
    return round((original_price - price) / original_price * 100)


def check_prices(price: float, original_price: Optional[float]):
    if original_price is not None and original_price < price:
        raise ValidationError("Original price must not be lower than price")


class Catalog:
    def __init__(self, db):
        self.db = db

    def list_products(self, category: Optional[str] = None, search: Optional[str] = None,
                      min_price: Optional[float] = None, max_price: Optional[float] = None,
                      rating: Optional[float] = None, sort: str = "created_at", order: str = "desc",
                      page: int = 1, limit: int = 20) -> dict:
        if sort not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by {sort}")
        if order not in ("asc", "desc"):
            raise ValidationError("Order must be asc or desc")
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError("Invalid pagination parameters")

        query = {"approved": True}
        if category:
            query["category"] = category
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        price_range = {}
        if min_price is not None:
            price_range["$gte"] = min_price
        if max_price is not None:
            price_range["$lte"] = max_price
        if price_range:
            query["price"] = price_range
        if rating is not None:
            query["rating"] = {"$gte": rating}

        total = self.db["product"].count_documents(query)
        direction = ASCENDING if order == "asc" else DESCENDING
        cursor = (
            self.db["product"].find(query)
            .sort([(sort, direction), ("_id", direction)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return {
            "products": [to_str_id(d) for d in cursor],
            "pagination": paginate(page, limit, total),
        }

    def list_all(self):
        return [to_str_id(d) for d in self.db["product"].find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])]

    def get_product(self, product_id: str, include_unapproved: bool = False) -> dict:
        query = {"_id": object_id(product_id, "Product")}
        if not include_unapproved:
            query["approved"] = True
        doc = self.db["product"].find_one(query)
        if not doc:
            raise NotFound("Product not found")
        return to_str_id(doc)

    def create_product(self, product: Product, approved: bool = True, **extra) -> dict:
        check_prices(product.price, product.original_price)
        data = product.model_dump()
        data.update({
            "discount_percentage": discount_percentage(product.price, product.original_price),
            "rating": 0.0,
            "reviews_count": 0,
            "approved": approved,
        })
        data.update(extra)
        pid = create_document(self.db, "product", data)
        logger.info("Created product %s (%s)", pid, product.title)
        return self.get_product(pid, include_unapproved=True)

    def update_product(self, product_id: str, updates: ProductUpdate) -> dict:
        existing = self.get_product(product_id, include_unapproved=True)
        data = updates.model_dump(exclude_unset=True)
        if "price" in data and data["price"] is None:
            raise ValidationError("Price cannot be empty")
        if "stock" in data and data["stock"] is None:
            raise ValidationError("Stock cannot be empty")
        if "title" in data and data["title"] is None:
            raise ValidationError("Title cannot be empty")
        if "price" in data or "original_price" in data:
            price = data.get("price", existing.get("price"))
            original_price = data.get("original_price", existing.get("original_price"))
            check_prices(price, original_price)
            data["discount_percentage"] = discount_percentage(price, original_price)
        data["updated_at"] = utcnow()
        self.db["product"].update_one({"_id": object_id(product_id, "Product")}, {"$set": data})
        return self.get_product(product_id, include_unapproved=True)

    def delete_product(self, product_id: str):
        oid = object_id(product_id, "Product")
        res = self.db["product"].delete_one({"_id": oid})
        if res.deleted_count == 0:
            raise NotFound("Product not found")
        # Orders keep their own snapshots; cart lines and reviews go with the product.
        self.db["cart_item"].delete_many({"product_id": product_id})
        self.db["review"].delete_many({"product_id": product_id})
        logger.info("Deleted product %s", product_id)

    def set_approval(self, product_id: str, approved: bool) -> dict:
        res = self.db["product"].update_one(
            {"_id": object_id(product_id, "Product")},
            {"$set": {"approved": approved, "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise NotFound("Product not found")
        return self.get_product(product_id, include_unapproved=True)

    def list_categories(self):
        return [to_str_id(d) for d in self.db["category"].find({}).sort("sort_order", ASCENDING)]
