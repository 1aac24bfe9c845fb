import json

import httpx
import pytest

from errors import NotFound, UpstreamFailure, ValidationError
from integrations import AdsPlatform, ChatCompletionClient, LanguageModel, SupplierCatalog, parse_json_reply
from merchandising import AdCampaigns, ProductAnalyst, SupplierImporter, load_settings, save_settings
from schemas import AnalysisSettingsUpdate, CampaignCreate, CampaignUpdate


def test_parse_json_reply():
    assert parse_json_reply('{"a": 1}') == {"a": 1}
    assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_reply("```\n{\"a\": 2}\n```") == {"a": 2}

    default = {"fallback": True}
    assert parse_json_reply("I think it's great!", default) == default
    assert parse_json_reply("[1, 2]", default) == default
    assert parse_json_reply("", default) == default
    assert parse_json_reply(None) == {}

    result = parse_json_reply("nope", default)
    result["fallback"] = False
    assert default == {"fallback": True}


def test_analysis_auto_approves_confident_verdict(db, llm, make_product):
    product = make_product(approved=False)
    llm.replies.append(json.dumps({
        "quality_score": 8.5, "marketability_score": 7, "should_approve": True, "confidence": 0.95,
    }))

    analysis = ProductAnalyst(db, llm).analyze(product["id"])

    assert analysis["approved"] is True
    assert analysis["confidence"] == 0.95
    assert db["product"].find_one({"title": "Widget"})["approved"] is True
    assert "Widget" in llm.prompts[0]


@pytest.mark.parametrize("reply", [
    "this product looks fine to me",
    '{"should_approve": true, "confidence": 0.5}',
    '{"should_approve": "yes", "confidence": 0.99}',
    '{"should_approve": true, "confidence": "very"}',
])
def test_analysis_leaves_product_unapproved(db, llm, make_product, reply):
    product = make_product(approved=False)
    llm.replies.append(reply)

    analysis = ProductAnalyst(db, llm).analyze(product["id"])

    assert analysis["approved"] is False
    assert db["product"].find_one({"title": "Widget"})["approved"] is False


def test_manual_approval_of_analysis(db, llm, make_product):
    product = make_product(approved=False)
    analyst = ProductAnalyst(db, llm)
    analysis = analyst.analyze(product["id"])

    approved = analyst.approve_analysis(analysis["id"])

    assert approved["approved"] is True
    assert db["product"].find_one({"title": "Widget"})["approved"] is True
    assert analyst.list_analyses()[0]["product_title"] == "Widget"
    with pytest.raises(NotFound):
        analyst.approve_analysis("64b000000000000000000000")


def test_supplier_search():
    supplier = SupplierCatalog()
    assert [p.id for p in supplier.search(category="electronics")] == ["ae_001", "ae_003"]
    assert [p.id for p in supplier.search(query="led")] == ["ae_002"]
    assert [p.id for p in supplier.search(min_price=15, max_price=20)] == ["ae_003"]
    with pytest.raises(NotFound):
        supplier.import_listing("ae_999")


def test_supplier_import(db, llm):
    llm.replies.append('```json\n{"optimized_title": "Earbuds Pro Max", "tags": ["audio", "wireless"]}\n```')
    llm.replies.append('{"should_approve": true, "confidence": 0.85}')
    importer = SupplierImporter(db, SupplierCatalog(), llm)

    result = importer.import_listing("ae_001", markup=100)

    product = result["product"]
    assert result["import_price"] == 51.98
    assert product["price"] == 51.98
    assert product["title"] == "Earbuds Pro Max"
    assert product["description"] == "Premium wireless earbuds with active noise cancellation"
    assert product["tags"] == ["audio", "wireless"]
    assert product["stock"] == 100
    assert product["supplier_id"] == "ae_001"
    assert result["ai_analysis"]["approved"] is True
    assert db["product"].find_one({"supplier_id": "ae_001"})["approved"] is True
    assert [i["supplier_id"] for i in importer.imports()] == ["ae_001"]

    with pytest.raises(ValidationError):
        importer.import_listing("ae_001")
    assert db["product"].count_documents({"supplier_id": "ae_001"}) == 1


def test_supplier_import_with_unreadable_model_reply(db, llm):
    llm.replies.extend(["Sure! Here is a better title: ...", "no idea"])

    result = SupplierImporter(db, SupplierCatalog(), llm).import_listing("ae_002", markup=100)

    assert result["product"]["title"] == "LED Strip Lights RGB"
    assert result["import_price"] == 25.98
    assert result["product"]["approved"] is False


def test_campaign_create_and_toggle(db, llm, make_product):
    product = make_product(title="A very long product title for ads", price=19.99, description="Great")
    campaigns = AdCampaigns(db, llm)
    llm.replies.append("not json")

    campaign = campaigns.create(CampaignCreate(product_id=product["id"], campaign_name="Spring", budget=50))

    assert campaign["status"] == "active"
    assert campaign["campaign_id"].startswith("campaign_")
    assert campaign["ad_copy"]["headline"] == "A very long product title"
    assert campaign["ad_copy"]["cta_text"] == "Shop Now"

    assert campaigns.toggle(campaign["campaign_id"])["status"] == "paused"
    assert campaigns.toggle(campaign["campaign_id"])["status"] == "active"
    assert len(campaigns.list()) == 1
    with pytest.raises(NotFound):
        campaigns.toggle("campaign_missing")


def test_merchandising_routes_are_admin_only(client, make_user, make_product, llm):
    _, user_headers = make_user()
    _, admin_headers = make_user(role="admin")
    product = make_product(approved=False)

    assert client.post(f"/ai/analyze-product/{product['id']}", headers=user_headers).status_code == 403
    assert client.get("/supplier/search", headers=user_headers).status_code == 403
    assert client.get("/ads/campaigns").status_code == 401

    llm.replies.append('{"should_approve": false, "confidence": 0.99}')
    resp = client.post(f"/ai/analyze-product/{product['id']}", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["analysis"]["approved"] is False

    body = client.get("/supplier/search", params={"query": "lens"}, headers=admin_headers).json()
    assert body["total"] == 1

    resp = client.post("/ads/campaigns", json={"product_id": product["id"], "campaign_name": "X", "budget": 0},
                       headers=admin_headers)
    assert resp.status_code == 400


def test_chat_client_reads_first_choice(monkeypatch):
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    llm = ChatCompletionClient(api_url="http://llm.test/v1/", api_key="k", model="m")
    assert llm.generate_copy("hi", system="be nice") == "hello"
    assert captured["auth"] == "Bearer k"
    assert captured["body"]["messages"][0] == {"role": "system", "content": "be nice"}
    assert captured["body"]["model"] == "m"


def test_chat_client_wraps_http_errors(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(503, json={"error": "down"}))
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    with pytest.raises(UpstreamFailure):
        ChatCompletionClient(api_url="http://llm.test/v1").generate_copy("hi")


def test_chat_client_rejects_non_object_body(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    with pytest.raises(UpstreamFailure):
        ChatCompletionClient(api_url="http://llm.test/v1").generate_copy("hi")


def test_unreadable_model_response_over_http(client, make_user, make_product, monkeypatch):
    from main import app, get_llm

    _, admin_headers = make_user(role="admin")
    product = make_product(approved=False)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=transport, **kw))
    app.dependency_overrides[get_llm] = lambda: ChatCompletionClient(api_url="http://llm.test/v1")

    resp = client.post(f"/ai/analyze-product/{product['id']}", headers=admin_headers)

    assert resp.status_code == 502
    assert resp.json() == {"error": "Language model returned an unreadable response"}


class FlakyModel(LanguageModel):
    """Fails for prompts mentioning `broken`, otherwise replays queued replies."""

    def __init__(self, broken):
        self.broken = broken
        self.replies = []

    def generate_copy(self, prompt, system=None, max_tokens=500, temperature=0.3):
        if self.broken in prompt:
            raise UpstreamFailure("Language model request failed")
        return self.replies.pop(0) if self.replies else ""


def test_bulk_analyze_only_unanalyzed_products(db, make_product):
    llm = FlakyModel("Gadget")
    analyst = ProductAnalyst(db, llm)
    done = make_product(title="Done", approved=False)
    analyst.analyze(done["id"])
    fresh = make_product(title="Fresh", approved=False)
    broken = make_product(title="Gadget", approved=False)
    llm.replies.append('{"should_approve": true, "confidence": 0.95}')

    report = analyst.bulk_analyze()

    assert report["message"] == "Analyzed 1 products"
    assert [a["product_id"] for a in report["analyzed"]] == [fresh["id"]]
    assert report["analyzed"][0]["approved"] is True
    assert report["failed"] == [{"product_id": broken["id"], "error": "Language model request failed"}]
    assert db["ai_analysis"].count_documents({"product_id": done["id"]}) == 1


def test_stored_threshold_drives_auto_approval(db, llm, make_product):
    product = make_product(approved=False)
    analyst = ProductAnalyst(db, llm)
    assert load_settings(db)["auto_approval_threshold"] == 0.9

    settings = save_settings(db, AnalysisSettingsUpdate(auto_approval_threshold=0.5))
    assert settings["auto_approval_threshold"] == 0.5
    assert settings["import_approval_threshold"] == 0.8

    llm.replies.append('{"should_approve": true, "confidence": 0.6}')
    assert analyst.analyze(product["id"])["approved"] is True


def test_import_without_auto_analysis(db, llm):
    save_settings(db, AnalysisSettingsUpdate(enable_auto_product_analysis=False))

    result = SupplierImporter(db, SupplierCatalog(), llm).import_listing("ae_003")

    assert result["ai_analysis"] is None
    assert result["product"]["approved"] is False
    assert db["ai_analysis"].count_documents({}) == 0


def test_bulk_import_reports_each_listing(db, llm):
    importer = SupplierImporter(db, SupplierCatalog(), llm)

    report = importer.bulk_import(["ae_001", "ae_999", "ae_001"], markup=100)

    assert report["imported"] == 1
    assert report["errors"] == 2
    assert report["details"]["imported"][0]["import_price"] == 51.98
    assert report["details"]["errors"] == [
        {"id": "ae_999", "error": "Supplier product not found"},
        {"id": "ae_001", "error": "Product already imported"},
    ]


class ReportingPlatform(AdsPlatform):
    def __init__(self):
        self.updates = []

    def update_campaign(self, campaign_id, changes):
        self.updates.append((campaign_id, changes))

    def fetch_performance(self, campaign_id):
        return {"impressions": 10000, "clicks": 250, "conversions": 10, "spend": 120.0}


def test_campaign_update_and_performance(db, llm, make_product):
    product = make_product()
    platform = ReportingPlatform()
    campaigns = AdCampaigns(db, llm, platform)
    campaign = campaigns.create(CampaignCreate(product_id=product["id"], campaign_name="Spring", budget=50))

    updated = campaigns.update(campaign["campaign_id"], CampaignUpdate(budget=75))
    assert updated["budget"] == 75
    assert updated["campaign_name"] == "Spring"
    assert platform.updates == [(campaign["campaign_id"], {"budget": 75.0})]
    with pytest.raises(ValidationError):
        campaigns.update(campaign["campaign_id"], CampaignUpdate())
    with pytest.raises(NotFound):
        campaigns.update("campaign_missing", CampaignUpdate(budget=10))

    report = campaigns.performance(campaign["campaign_id"])
    assert report["ctr"] == 2.5
    assert report["cpm"] == 12.0
    assert report["conversion_rate"] == 4.0
    assert report["cost_per_conversion"] == 12.0
    stored = db["ad_campaign"].find_one({"campaign_id": campaign["campaign_id"]})
    assert stored["performance_metrics"]["clicks"] == 250


def test_performance_without_platform_data(db, llm, make_product):
    product = make_product()
    campaigns = AdCampaigns(db, llm)
    campaign = campaigns.create(CampaignCreate(product_id=product["id"], campaign_name="Quiet", budget=20))

    report = campaigns.performance(campaign["campaign_id"])

    assert report["impressions"] == 0
    assert report["ctr"] == 0.0
    assert report["cost_per_conversion"] == 0.0


def test_admin_marketing_routes(client, make_user, make_product, llm):
    _, user_headers = make_user()
    _, admin_headers = make_user(role="admin")
    product = make_product(approved=False)

    assert client.get("/ai/config", headers=user_headers).status_code == 403
    resp = client.post("/ai/config", json={"auto_approval_threshold": 0.7}, headers=admin_headers)
    assert resp.json()["config"]["auto_approval_threshold"] == 0.7
    assert client.get("/ai/config", headers=admin_headers).json()["auto_approval_threshold"] == 0.7
    assert client.post("/ai/config", json={"auto_approval_threshold": 2}, headers=admin_headers).status_code == 400

    llm.replies.append('{"should_approve": true, "confidence": 0.75}')
    report = client.post("/ai/bulk-analyze", headers=admin_headers).json()
    assert report["analyzed"][0]["product_id"] == product["id"]
    assert report["analyzed"][0]["approved"] is True

    resp = client.post("/supplier/bulk-import", json={"product_ids": ["ae_002", "nope"]}, headers=admin_headers)
    assert resp.json()["imported"] == 1
    assert resp.json()["errors"] == 1
    assert client.post("/supplier/bulk-import", json={"product_ids": []}, headers=admin_headers).status_code == 400

    campaign = client.post("/ads/campaigns", json={"product_id": product["id"], "campaign_name": "Launch", "budget": 30},
                           headers=admin_headers).json()["campaign"]
    resp = client.put(f"/ads/campaigns/{campaign['campaign_id']}", json={"campaign_name": "Relaunch"}, headers=admin_headers)
    assert resp.json()["campaign"]["campaign_name"] == "Relaunch"
    resp = client.get(f"/ads/campaigns/{campaign['campaign_id']}/performance", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["campaign_id"] == campaign["campaign_id"]
    assert client.get("/ads/campaigns/campaign_missing/performance", headers=admin_headers).status_code == 404
