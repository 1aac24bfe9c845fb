"""
Admin merchandising built on the outside collaborators: AI product analysis
and auto-approval, supplier listing import, and ad campaigns.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

import config
from catalog import Catalog
from database import create_document, object_id, to_str_id, utcnow
from errors import NotFound, StoreError, UpstreamFailure, ValidationError
from integrations import AdsPlatform, LanguageModel, SupplierCatalog, parse_json_reply
from schemas import AnalysisSettingsUpdate, CampaignCreate, CampaignUpdate, Product

logger = logging.getLogger(__name__)

ANALYST_SYSTEM_PROMPT = "You are a product quality analyst. Evaluate products for an e-commerce platform."
OPTIMIZER_SYSTEM_PROMPT = "You are an e-commerce product optimization expert."
ADS_SYSTEM_PROMPT = "You are a Facebook Ads expert. Create high-converting ad copy."

DEFAULT_ANALYSIS = {
    "quality_score": 0.0,
    "marketability_score": 0.0,
    "should_approve": False,
    "confidence": 0.5,
}

SETTINGS_KEY = "ai"
DEFAULT_SETTINGS = {
    "auto_approval_threshold": config.AUTO_APPROVAL_THRESHOLD,
    "import_approval_threshold": config.IMPORT_APPROVAL_THRESHOLD,
    "enable_auto_product_analysis": True,
}


def _score(value, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def load_settings(db) -> dict:
    stored = db["ai_config"].find_one({"key": SETTINGS_KEY}) or {}
    return {name: stored.get(name, default) for name, default in DEFAULT_SETTINGS.items()}


def save_settings(db, changes: AnalysisSettingsUpdate) -> dict:
    data = changes.model_dump(exclude_none=True)
    if data:
        db["ai_config"].update_one(
            {"key": SETTINGS_KEY},
            {"$set": {**data, "updated_at": utcnow()}, "$setOnInsert": {"key": SETTINGS_KEY}},
            upsert=True,
        )
        logger.info("AI settings updated: %s", ", ".join(sorted(data)))
    return load_settings(db)


class ProductAnalyst:
    def __init__(self, db, llm: LanguageModel):
        self.db = db
        self.llm = llm
        self.catalog = Catalog(db)

    def analyze(self, product_id: str, analysis_type: str = "product_quality",
                threshold: Optional[float] = None, context: str = "") -> dict:
        if threshold is None:
            threshold = load_settings(self.db)["auto_approval_threshold"]
        product = self.catalog.get_product(product_id, include_unapproved=True)
        prompt = (
            "Analyze this product for an e-commerce platform:\n\n"
            f"Title: {product['title']}\n"
            f"Description: {product.get('description') or ''}\n"
            f"Price: ${product['price']}\n"
            f"Category: {product.get('category') or ''}\n"
            f"{context}\n"
            "Provide a quality assessment and recommendation for approval.\n"
            "Response format: JSON with quality_score, marketability_score, should_approve, and confidence."
        )
        reply = self.llm.generate_copy(prompt, system=ANALYST_SYSTEM_PROMPT, max_tokens=300, temperature=0.2)
        analysis = {**DEFAULT_ANALYSIS, **parse_json_reply(reply, DEFAULT_ANALYSIS)}
        confidence = _score(analysis.get("confidence"), DEFAULT_ANALYSIS["confidence"])
        approved = analysis.get("should_approve") is True and confidence >= threshold

        analysis_id = create_document(self.db, "ai_analysis", {
            "product_id": product_id,
            "analysis_type": analysis_type,
            "result": analysis,
            "confidence": confidence,
            "approved": approved,
        })
        if approved:
            self.catalog.set_approval(product_id, True)
            logger.info("Product %s auto-approved (confidence %.2f)", product_id, confidence)
        return to_str_id(self.db["ai_analysis"].find_one({"_id": ObjectId(analysis_id)}))

    def list_analyses(self):
        analyses = [to_str_id(d) for d in self.db["ai_analysis"].find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])]
        for analysis in analyses:
            product = None
            if ObjectId.is_valid(analysis["product_id"]):
                product = self.db["product"].find_one({"_id": ObjectId(analysis["product_id"])}, {"title": 1})
            analysis["product_title"] = product["title"] if product else "Unknown Product"
        return analyses

    def approve_analysis(self, analysis_id: str) -> dict:
        updated = self.db["ai_analysis"].find_one_and_update(
            {"_id": object_id(analysis_id, "Analysis")},
            {"$set": {"approved": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFound("Analysis not found")
        self.catalog.set_approval(updated["product_id"], True)
        return to_str_id(updated)

    def bulk_analyze(self) -> dict:
        """Analyze every product that has no analysis on record yet."""
        analyzed_ids = set(self.db["ai_analysis"].distinct("product_id"))
        pending = [str(d["_id"]) for d in self.db["product"].find({}, {"_id": 1}).sort("created_at", DESCENDING)
                   if str(d["_id"]) not in analyzed_ids]
        analyzed, failed = [], []
        for product_id in pending:
            try:
                analysis = self.analyze(product_id)
            except UpstreamFailure as e:
                logger.warning("Bulk analysis skipped product %s: %s", product_id, e.message)
                failed.append({"product_id": product_id, "error": e.message})
                continue
            analyzed.append({"product_id": product_id, "analysis_id": analysis["id"], "approved": analysis["approved"]})
        return {
            "message": f"Analyzed {len(analyzed)} products",
            "analyzed": analyzed,
            "failed": failed,
        }


class SupplierImporter:
    def __init__(self, db, supplier: SupplierCatalog, llm: LanguageModel):
        self.db = db
        self.supplier = supplier
        self.llm = llm
        self.catalog = Catalog(db)
        self.analyst = ProductAnalyst(db, llm)

    def import_listing(self, listing_id: str, markup: float = config.DEFAULT_MARKUP_PERCENT) -> dict:
        listing = self.supplier.import_listing(listing_id)
        if self.db["supplier_import"].find_one({"supplier_id": listing_id, "imported": True}):
            raise ValidationError("Product already imported")

        import_price = round(listing.price * (1 + markup / 100), 2)
        prompt = (
            "Optimize this product for an e-commerce store:\n\n"
            f"Original Title: {listing.title}\n"
            f"Original Description: {listing.description}\n"
            f"Price: ${import_price}\n"
            f"Category: {listing.category or ''}\n\n"
            "Format as JSON with optimized_title, optimized_description, selling_points, and tags."
        )
        optimization = parse_json_reply(self.llm.generate_copy(prompt, system=OPTIMIZER_SYSTEM_PROMPT))
        title = optimization.get("optimized_title") if isinstance(optimization.get("optimized_title"), str) else None
        description = optimization.get("optimized_description") if isinstance(optimization.get("optimized_description"), str) else None
        tags = optimization.get("tags") if isinstance(optimization.get("tags"), list) else []

        product = self.catalog.create_product(
            Product(
                title=title or listing.title,
                description=description or listing.description,
                image_url=listing.images[0] if listing.images else None,
                price=import_price,
                stock=config.DEFAULT_IMPORT_STOCK,
                category=listing.category,
                tags=[str(t) for t in tags],
            ),
            approved=False,
            supplier_id=listing.id,
            supplier_info=listing.supplier,
        )
        self.db["supplier_import"].update_one(
            {"supplier_id": listing.id},
            {"$set": {
                **listing.model_dump(exclude={"id"}),
                "supplier_id": listing.id,
                "product_id": product["id"],
                "import_price": import_price,
                "markup_percentage": markup,
                "imported": True,
                "updated_at": utcnow(),
            }, "$setOnInsert": {"created_at": utcnow()}},
            upsert=True,
        )
        logger.info("Imported supplier listing %s as product %s", listing.id, product["id"])

        settings = load_settings(self.db)
        analysis = None
        if settings["enable_auto_product_analysis"]:
            analysis = self.analyst.analyze(
                product["id"],
                analysis_type="supplier_import",
                threshold=settings["import_approval_threshold"],
                context=f"Original supplier price: ${listing.price}\nMarkup: {markup}%\n",
            )
        return {
            "product": self.catalog.get_product(product["id"], include_unapproved=True),
            "supplier_product": listing.model_dump(),
            "ai_optimization": optimization,
            "ai_analysis": analysis,
            "import_price": import_price,
            "markup_percentage": markup,
        }

    def imports(self):
        return [to_str_id(d) for d in self.db["supplier_import"].find({"imported": True}).sort("created_at", DESCENDING)]

    def bulk_import(self, listing_ids: List[str], markup: float = config.DEFAULT_MARKUP_PERCENT) -> dict:
        imported, errors = [], []
        for listing_id in listing_ids:
            try:
                result = self.import_listing(listing_id, markup)
            except StoreError as e:
                errors.append({"id": listing_id, "error": e.message})
                continue
            imported.append({
                "supplier_id": listing_id,
                "product_id": result["product"]["id"],
                "import_price": result["import_price"],
            })
        logger.info("Bulk import: %d imported, %d failed", len(imported), len(errors))
        return {
            "imported": len(imported),
            "errors": len(errors),
            "details": {"imported": imported, "errors": errors},
        }


class AdCampaigns:
    def __init__(self, db, llm: LanguageModel, platform: Optional[AdsPlatform] = None):
        self.db = db
        self.llm = llm
        self.platform = platform or AdsPlatform()
        self.catalog = Catalog(db)

    def default_copy(self, product: dict) -> dict:
        return {
            "headline": product["title"][:25],
            "secondary_headline": f"Now only ${product['price']}"[:40],
            "description": (product.get("description") or product["title"])[:90],
            "cta_text": "Shop Now",
            "targeting_suggestions": [],
        }

    def create(self, payload: CampaignCreate) -> dict:
        product = self.catalog.get_product(payload.product_id, include_unapproved=True)
        prompt = (
            "Create compelling Facebook ad copy for this product:\n\n"
            f"Product: {product['title']}\n"
            f"Description: {product.get('description') or ''}\n"
            f"Price: ${product['price']}\n"
            f"Category: {product.get('category') or ''}\n"
            f"Target Audience: {payload.target_audience}\n\n"
            "Format as JSON with headline, secondary_headline, description, cta_text, and targeting_suggestions."
        )
        ad_copy = parse_json_reply(
            self.llm.generate_copy(prompt, system=ADS_SYSTEM_PROMPT, max_tokens=400, temperature=0.4),
            self.default_copy(product),
        )
        campaign_id = self.platform.launch_campaign(payload.campaign_name, payload.budget, ad_copy)
        doc_id = create_document(self.db, "ad_campaign", {
            "campaign_id": campaign_id,
            "product_id": payload.product_id,
            "campaign_name": payload.campaign_name,
            "budget": payload.budget,
            "target_audience": payload.target_audience,
            "ad_copy": ad_copy,
            "status": "active",
            "performance_metrics": {"impressions": 0, "clicks": 0, "conversions": 0, "spend": 0},
        })
        return to_str_id(self.db["ad_campaign"].find_one({"_id": ObjectId(doc_id)}))

    def list(self):
        return [to_str_id(d) for d in self.db["ad_campaign"].find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])]

    def toggle(self, campaign_id: str) -> dict:
        campaign = self.db["ad_campaign"].find_one({"campaign_id": campaign_id})
        if not campaign:
            raise NotFound("Campaign not found")
        new_status = "paused" if campaign["status"] == "active" else "active"
        self.platform.set_status(campaign_id, new_status)
        updated = self.db["ad_campaign"].find_one_and_update(
            {"_id": campaign["_id"]},
            {"$set": {"status": new_status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return to_str_id(updated)

    def update(self, campaign_id: str, changes: CampaignUpdate) -> dict:
        data = changes.model_dump(exclude_none=True)
        if not data:
            raise ValidationError("No changes supplied")
        if not self.db["ad_campaign"].find_one({"campaign_id": campaign_id}):
            raise NotFound("Campaign not found")
        self.platform.update_campaign(campaign_id, data)
        updated = self.db["ad_campaign"].find_one_and_update(
            {"campaign_id": campaign_id},
            {"$set": {**data, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return to_str_id(updated)

    def performance(self, campaign_id: str) -> dict:
        campaign = self.db["ad_campaign"].find_one({"campaign_id": campaign_id})
        if not campaign:
            raise NotFound("Campaign not found")
        metrics = dict(campaign.get("performance_metrics") or {})
        live = self.platform.fetch_performance(campaign_id)
        if live:
            metrics.update(live)
            self.db["ad_campaign"].update_one(
                {"_id": campaign["_id"]},
                {"$set": {"performance_metrics": metrics, "updated_at": utcnow()}},
            )
        impressions = metrics.get("impressions", 0)
        clicks = metrics.get("clicks", 0)
        conversions = metrics.get("conversions", 0)
        spend = metrics.get("spend", 0)
        return {
            "campaign_id": campaign_id,
            **metrics,
            "ctr": round(clicks / impressions * 100, 2) if impressions else 0.0,
            "cpm": round(spend / impressions * 1000, 2) if impressions else 0.0,
            "conversion_rate": round(conversions / clicks * 100, 2) if clicks else 0.0,
            "cost_per_conversion": round(spend / conversions, 2) if conversions else 0.0,
            "updated_at": utcnow(),
        }
