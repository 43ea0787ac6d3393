from fastapi.testclient import TestClient


def test_http_error_shape(client: TestClient) -> None:
    res = client.get("/api/v1/does-not-exist")
    assert res.status_code == 404
    body = res.json()
    assert set(body.keys()) == {"detail", "code"}
    assert body["detail"] == "Not Found"


def test_validation_error_shape(client: TestClient) -> None:
    res = client.post("/api/v1/deposits/lost-fee/quote", json={"capacity_l": "-1", "unit_deposit": "10"})
    assert res.status_code == 422
    body = res.json()
    assert body["code"] == "validation_error"
    assert isinstance(body["detail"], list)


def test_ledger_error_carries_code_and_context(client: TestClient) -> None:
    res = client.post("/api/v1/deposits/transactions/00000000-0000-0000-0000-000000000000/void", json={"reason": "x"})
    assert res.status_code == 404
    body = res.json()
    assert body["code"] == "not_found"
    assert body["detail"]["message"] == "Deposit transaction not found"
    assert body["detail"]["transaction_id"] == "00000000-0000-0000-0000-000000000000"


def test_health_and_request_id(client: TestClient) -> None:
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
    assert res.headers.get("X-Request-ID")

    echoed = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"


def test_metrics_snapshot(client: TestClient) -> None:
    client.post(
        "/api/v1/deposits/customers/11111111-1111-1111-1111-111111111111/charge",
        json={"lines": [{"capacity_l": "6", "quantity": 1, "unit_deposit": "800"}]},
    )
    res = client.get("/api/v1/metrics")
    assert res.status_code == 200
    assert res.json()["deposit_charges"] == 1
