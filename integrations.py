"""
Outside collaborators behind small interfaces: a language model that turns a
prompt into text, a supplier catalog that yields listings, and an ads
platform that runs campaigns. Order, cart and review code never imports this
module.
"""
import json
import logging
import re
import uuid
from typing import List, Optional

import httpx

import config
from errors import NotFound, UpstreamFailure
from schemas import ListingData

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_reply(raw: Optional[str], default: Optional[dict] = None) -> dict:
    """Parse a model reply as a JSON object, returning `default` when the
    reply is empty, malformed or not an object."""
    fallback = dict(default or {})
    if not raw:
        return fallback
    text = raw.strip()
    match = _FENCE.match(text)
    if match:
        text = match.group(1)
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Model reply is not valid JSON: %.80r", raw)
        return fallback
    if not isinstance(data, dict):
        logger.warning("Model reply is not a JSON object: %.80r", raw)
        return fallback
    return data


class LanguageModel:
    def generate_copy(self, prompt: str, system: Optional[str] = None,
                      max_tokens: int = 500, temperature: float = 0.3) -> str:
        raise NotImplementedError


class ChatCompletionClient(LanguageModel):
    """OpenAI-compatible /chat/completions client. Waits for the full reply."""

    def __init__(self, api_url: str = config.LLM_API_URL, api_key: str = config.LLM_API_KEY,
                 model: str = config.LLM_MODEL, timeout: float = config.LLM_TIMEOUT):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def generate_copy(self, prompt: str, system: Optional[str] = None,
                      max_tokens: int = 500, temperature: float = 0.3) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        with httpx.Client(timeout=self.timeout) as client:
            try:
                resp = client.post(f"{self.api_url}/chat/completions", json=payload, headers=headers)
                resp.raise_for_status()
                body = resp.json()
            except httpx.HTTPError as e:
                logger.exception("Language model request failed")
                raise UpstreamFailure("Language model request failed") from e
            except ValueError as e:
                raise UpstreamFailure("Language model returned an unreadable response") from e
        if not isinstance(body, dict):
            raise UpstreamFailure("Language model returned an unreadable response")
        choices = body.get("choices") or [{}]
        first = choices[0] if isinstance(choices, list) and isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content")
        return content if isinstance(content, str) else ""


# Development catalog until a real supplier API is wired in
MOCK_LISTINGS = [
    ListingData(
        id="ae_001",
        title="Wireless Bluetooth Earbuds Pro",
        description="Premium wireless earbuds with active noise cancellation",
        price=25.99,
        images=[
            "https://images.unsplash.com/photo-1590658268037-6bf12165a8df?w=400",
            "https://images.unsplash.com/photo-1572569511254-d8f925fe2cbb?w=400",
        ],
        category="electronics",
        supplier={"name": "TechSupplier Co.", "rating": 4.8, "location": "Shenzhen, China"},
    ),
    ListingData(
        id="ae_002",
        title="LED Strip Lights RGB",
        description="Smart LED strip lights with app control",
        price=12.99,
        images=["https://images.unsplash.com/photo-1558618666-fcd25c85cd64?w=400"],
        category="home",
        supplier={"name": "LightTech Ltd.", "rating": 4.6, "location": "Guangzhou, China"},
    ),
    ListingData(
        id="ae_003",
        title="Phone Camera Lens Kit",
        description="Professional phone camera lens attachments",
        price=18.99,
        images=["https://images.unsplash.com/photo-1616091216791-a5360b5fc78a?w=400"],
        category="electronics",
        supplier={"name": "PhotoGear Inc.", "rating": 4.7, "location": "Dongguan, China"},
    ),
]


class SupplierCatalog:
    def __init__(self, listings: Optional[List[ListingData]] = None):
        self.listings = list(MOCK_LISTINGS if listings is None else listings)

    def search(self, query: Optional[str] = None, category: Optional[str] = None,
               min_price: Optional[float] = None, max_price: Optional[float] = None) -> List[ListingData]:
        results = self.listings
        if query:
            q = query.lower()
            results = [p for p in results if q in p.title.lower() or q in p.description.lower()]
        if category and category != "all":
            results = [p for p in results if p.category == category]
        if min_price is not None:
            results = [p for p in results if p.price >= min_price]
        if max_price is not None:
            results = [p for p in results if p.price <= max_price]
        return results

    def import_listing(self, listing_id: str) -> ListingData:
        for listing in self.listings:
            if listing.id == listing_id:
                return listing
        raise NotFound("Supplier product not found")

    def trending(self, count: int = 2) -> List[ListingData]:
        return self.listings[:count]


class AdsPlatform:
    """Campaign launcher. Campaigns are only recorded locally for now."""

    def launch_campaign(self, name: str, budget: float, ad_copy: dict) -> str:
        campaign_id = f"campaign_{uuid.uuid4().hex[:12]}"
        logger.info("Launched campaign %s (%s) with budget %.2f", campaign_id, name, budget)
        return campaign_id

    def set_status(self, campaign_id: str, status: str):
        logger.info("Campaign %s set to %s", campaign_id, status)

    def update_campaign(self, campaign_id: str, changes: dict):
        logger.info("Campaign %s updated: %s", campaign_id, ", ".join(sorted(changes)))

    def fetch_performance(self, campaign_id: str) -> dict:
        """Latest delivery counters from the platform; empty when none are reported."""
        return {}
