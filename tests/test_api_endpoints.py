from datetime import datetime
from zoneinfo import ZoneInfo

import sqlalchemy as sa

from dentbill import models


def _current_year_month():
    return datetime.now(ZoneInfo("Asia/Tokyo")).strftime("%Y%m")


def _seed_encounter(in_memory_db, make_encounter, encounter_id="R1", plan="#36 CR充填 単純"):
    with in_memory_db.make_session() as session:
        make_encounter(session, encounter_id, soap_p=plan)
        session.commit()


def test_health(api_client):
    resp = api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_trace_id_is_echoed(api_client):
    resp = api_client.get("/health", headers={"X-Trace-Id": "abc123"})
    assert resp.headers["X-Trace-Id"] == "abc123"


def test_derive_billing(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    resp = api_client.post("/api/billing/derive", json={"encounter_id": "R1"})
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    data = payload["data"]
    assert data["is_new"] is True
    assert data["total_points"] == 558
    assert data["patient_burden"] == 1674
    assert [item["code"] for item in data["line_items"]][:2] == ["A000", "A001-a"]
    assert payload["billing_id"] == data["billing_id"]


def test_derive_accepts_camel_case(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    resp = api_client.post("/api/billing/derive", json={"encounterId": "R1"})
    assert resp.status_code == 200


def test_derive_unknown_encounter(api_client):
    resp = api_client.post("/api/billing/derive", json={"encounter_id": "missing"})
    assert resp.status_code == 404
    payload = resp.json()
    assert payload["success"] is False
    assert payload["error"]["code"] == "encounter_not_found"


def test_payment_without_billing(api_client):
    resp = api_client.post("/api/billing/R1/payment")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "billing_not_found"


def test_receipts_bad_year_month(api_client):
    resp = api_client.post("/api/receipts/generate", json={"year_month": "2025-06"})
    assert resp.status_code == 422
    resp = api_client.post("/api/receipts/generate", json={"year_month": "202513"})
    assert resp.status_code == 422


def test_receipts_without_paid_billings(api_client):
    resp = api_client.post("/api/receipts/generate", json={"year_month": "202001"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "no_paid_billings"


def test_claim_file_flow(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    assert api_client.post("/api/billing/derive", json={"encounter_id": "R1"}).status_code == 200
    paid = api_client.post("/api/billing/R1/payment")
    assert paid.json()["data"]["payment_status"] == "paid"
    year_month = _current_year_month()

    preview = api_client.post("/api/receipts/generate", json={"year_month": year_month, "format": "json"})
    assert preview.status_code == 200
    data = preview.json()["data"]
    assert data["receipt_count"] == 1
    assert data["total_points"] == 558
    assert data["csv"].startswith("UK,")

    with in_memory_db.make_session() as session:
        status = session.execute(sa.select(models.billing.c.claim_status)).scalar_one()
    assert status == "pending"

    resp = api_client.post("/api/receipts/generate", json={"year_month": year_month, "format": "uke"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/octet-stream"
    assert resp.headers["content-disposition"] == f'attachment; filename="receipt_{year_month}.UKE"'
    text = resp.content.decode("cp932")
    assert text.endswith("\r\nGO,1,558,99\r\n")

    with in_memory_db.make_session() as session:
        status = session.execute(sa.select(models.billing.c.claim_status)).scalar_one()
    assert status == "billed"


def test_receipt_check_flow(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    api_client.post("/api/billing/derive", json={"encounter_id": "R1"})
    api_client.post("/api/billing/R1/payment")

    resp = api_client.post("/api/receipts/check", json={"yearMonth": _current_year_month()})
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    assert payload["summary"] == {"total": 1, "ok": 0, "warn": 0, "error": 1}
    result = payload["data"]["results"][0]
    assert result["status"] == "error"
    assert any("傷病名が1つも登録されていません" in e for e in result["errors"])
    assert result["findings"][0]["level"] == "error"
    assert payload["rules_loaded"]["frequency_limits"] == 3


def test_receipt_check_by_billing_ids(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    billing_id = api_client.post("/api/billing/derive", json={"encounter_id": "R1"}).json()["billing_id"]

    resp = api_client.post("/api/receipts/check", json={"year_month": "202001", "billingIds": [billing_id]})
    assert resp.status_code == 200
    assert [r["billing_id"] for r in resp.json()["results"]] == [billing_id]


def test_receipt_check_empty_month(api_client):
    resp = api_client.post("/api/receipts/check", json={"year_month": "202001"})
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["results"] == []
    assert payload["message"] == "該当月の精算済みデータがありません"


def test_receipt_check_bad_year_month(api_client):
    resp = api_client.post("/api/receipts/check", json={"year_month": "2025-06"})
    assert resp.status_code == 422


def test_receipt_check_rule_counts(api_client):
    resp = api_client.get("/api/receipts/check")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "ready"
    assert payload["rules"]["diagnosis_requirements"] == 1
    assert payload["rules"]["total"] == sum(v for k, v in payload["rules"].items() if k != "total")


def test_document_provided(api_client, in_memory_db, make_encounter):
    _seed_encounter(in_memory_db, make_encounter)
    api_client.post("/api/billing/derive", json={"encounter_id": "R1"})

    resp = api_client.put("/api/billing/R1/document", json={"provided": True})
    assert resp.status_code == 200
    assert resp.json()["document_provided"] is True

    with in_memory_db.make_session() as session:
        provided = session.execute(sa.select(models.billing.c.document_provided)).scalar_one()
    assert provided is True


def test_document_without_billing(api_client):
    resp = api_client.put("/api/billing/R1/document", json={"provided": True})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "billing_not_found"
