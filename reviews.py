import logging
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING

from database import object_id, utcnow
from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)


class ReviewAggregator:
    """Reviews for a product. The product's rating and reviews_count are
    recomputed from the review collection on every write."""

    def __init__(self, db):
        self.db = db

    def add(self, user_id: str, product_id: str, rating: int, comment: Optional[str] = None,
            verified_purchase: bool = False) -> dict:
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")
        product = self.db["product"].find_one({"_id": object_id(product_id, "Product"), "approved": True})
        if not product:
            raise NotFound("Product not found")

        now = utcnow()
        doc = {
            "product_id": product_id,
            "user_id": user_id,
            "rating": rating,
            "comment": comment,
            "verified_purchase": verified_purchase,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = self.db["review"].insert_one(doc).inserted_id
        self.recompute(product_id)
        return self._serialize(doc, self._reviewer_names([user_id]))

    def recompute(self, product_id: str):
        ratings = [r["rating"] for r in self.db["review"].find({"product_id": product_id}, {"rating": 1})]
        average = round(sum(ratings) / len(ratings), 2) if ratings else 0.0
        self.db["product"].update_one(
            {"_id": object_id(product_id, "Product")},
            {"$set": {"rating": average, "reviews_count": len(ratings), "updated_at": utcnow()}},
        )
        return average, len(ratings)

    def list(self, product_id: str):
        docs = list(self.db["review"].find({"product_id": product_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
        names = self._reviewer_names({d["user_id"] for d in docs})
        return [self._serialize(d, names) for d in docs]

    def _reviewer_names(self, user_ids) -> dict:
        ids = [ObjectId(uid) for uid in user_ids if ObjectId.is_valid(uid)]
        if not ids:
            return {}
        return {str(u["_id"]): u.get("full_name") for u in self.db["user"].find({"_id": {"$in": ids}}, {"full_name": 1})}

    @staticmethod
    def _serialize(doc: dict, names: dict) -> dict:
        return {
            "id": str(doc["_id"]),
            "product_id": doc["product_id"],
            "user_id": doc["user_id"],
            "rating": doc["rating"],
            "comment": doc.get("comment"),
            "verified_purchase": doc.get("verified_purchase", False),
            "created_at": doc.get("created_at"),
            "users": {"full_name": names.get(doc["user_id"])},
        }
