import uuid
from datetime import date, timedelta

from fastapi.testclient import TestClient


def _open(client: TestClient, *, quantity: int = 3, deadline: date | None = None, customer_id: uuid.UUID | None = None) -> dict:
    res = client.post(
        "/api/v1/empty-returns",
        json={
            "order_id": str(uuid.uuid4()),
            "customer_id": str(customer_id or uuid.uuid4()),
            "product_id": str(uuid.uuid4()),
            "capacity_l": "13",
            "quantity": quantity,
            "unit_credit_amount": "1500.00",
            "return_deadline": (deadline or date.today() + timedelta(days=30)).isoformat(),
            "charge_deposit": True,
        },
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_open_return_and_replay(client: TestClient) -> None:
    credit = _open(client)
    assert credit["status"] == "pending"
    assert credit["total_credit_amount"] == "4500.00"
    assert credit["currency_code"] == "KES"
    assert credit["deposit_charged"] is True

    body = {
        "quantity": 1,
        "cylinder_status": "damaged",
        "idempotency_key": "scan-42",
        "damage_assessment": {"damage_type": "dented_body", "severity": "moderate"},
    }
    first = client.post(f"/api/v1/empty-returns/{credit['id']}/returns", json=body)
    assert first.status_code == 200, first.text
    assert first.json()["status"] == "partial_returned"
    assert first.json()["quantity_remaining"] == 2
    assert first.json()["remaining_credit_amount"] == "3000.00"
    assert first.json()["events"][0]["credit_amount"] == "900.00"

    replay = client.post(f"/api/v1/empty-returns/{credit['id']}/returns", json=body)
    assert replay.status_code == 200
    assert replay.json()["version"] == first.json()["version"]
    assert len(replay.json()["events"]) == 1

    too_many = client.post(
        f"/api/v1/empty-returns/{credit['id']}/returns", json={"quantity": 5, "idempotency_key": "scan-43"}
    )
    assert too_many.status_code == 409
    assert too_many.json()["code"] == "quantity_exceeds_remaining"
    assert too_many.json()["detail"]["remaining"] == 2

    history = client.get(f"/api/v1/empty-returns/{credit['id']}/history")
    assert history.status_code == 200
    assert [row["new_status"] for row in history.json()] == ["pending", "partial_returned"]


def test_cancel_and_closed_credit(client: TestClient) -> None:
    credit = _open(client, quantity=1)
    cancelled = client.post(f"/api/v1/empty-returns/{credit['id']}/cancel", json={"reason": "Order voided"})
    assert cancelled.status_code == 200, cancelled.text
    assert cancelled.json()["status"] == "cancelled"

    late = client.post(f"/api/v1/empty-returns/{credit['id']}/returns", json={"quantity": 1, "idempotency_key": "late-1"})
    assert late.status_code == 409
    assert late.json()["code"] == "credit_already_closed"
    assert late.json()["detail"]["status"] == "cancelled"


def test_expire_endpoint_and_summary(client: TestClient) -> None:
    customer_id = uuid.uuid4()
    overdue = _open(client, quantity=2, customer_id=customer_id, deadline=date.today() - timedelta(days=40))
    _open(client, quantity=1, customer_id=customer_id)

    summary = client.get("/api/v1/empty-returns/summary", params={"customer_id": str(customer_id)})
    assert summary.status_code == 200
    assert summary.json()["total_pending_quantity"] == 3

    run = client.post("/api/v1/empty-returns/expire")
    assert run.status_code == 200, run.text
    assert run.json()["expired"] == 1
    assert run.json()["forfeited_amount"] == "3000.00"

    fetched = client.get(f"/api/v1/empty-returns/{overdue['id']}")
    assert fetched.json()["status"] == "expired"

    listed = client.get("/api/v1/empty-returns", params={"customer_id": str(customer_id), "status": "pending"})
    assert listed.status_code == 200
    assert listed.json()["meta"]["total_items"] == 1


def test_brand_reconciliation_flow(client: TestClient) -> None:
    credit = _open(client, quantity=2)
    res = client.post(
        f"/api/v1/empty-returns/{credit['id']}/returns",
        json={
            "quantity": 2,
            "condition_at_return": "excellent",
            "idempotency_key": "brand-1",
            "original_brand": "total",
            "accepted_brand": "k-gas",
        },
    )
    assert res.status_code == 200, res.text
    assert res.json()["brand_exchange_fee"] == "100.00"
    assert res.json()["brand_reconciliation_status"] == "pending"

    today = date.today()
    report = client.get(
        "/api/v1/empty-returns/brand-reconciliation",
        params={"from_date": (today - timedelta(days=1)).isoformat(), "to_date": (today + timedelta(days=1)).isoformat()},
    )
    assert report.status_code == 200, report.text
    assert report.json()["pending_reconciliations"] == 1
    assert report.json()["total_exchange_fees"] == "100.00"

    updated = client.post(
        "/api/v1/empty-returns/brand-reconciliation", json={"credit_ids": [credit["id"]], "new_status": "matched"}
    )
    assert updated.status_code == 200
    assert updated.json() == {"updated_count": 1, "new_status": "matched"}


def test_unknown_credit_is_404(client: TestClient) -> None:
    res = client.get(f"/api/v1/empty-returns/{uuid.uuid4()}")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"
