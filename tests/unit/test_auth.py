def test_missing_bearer_token_returns_401(client) -> None:
    response = client.post("/v1/chat", json={"message": "hello"})
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "auth_missing"


def test_invalid_bearer_token_returns_401(client, auth_headers) -> None:
    headers = dict(auth_headers)
    headers["Authorization"] = "Bearer wrong"
    response = client.post("/v1/chat", headers=headers, json={"message": "hello"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "auth_invalid"


def test_missing_identity_headers_returns_422(client) -> None:
    response = client.post(
        "/v1/chat",
        headers={"Authorization": "Bearer test-key", "x-aia-org-id": "org-a"},
        json={"message": "hello"},
    )
    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "missing_required_headers"
    assert "x-aia-user-id" in body["error"]["message"]


def test_healthz_skips_authentication(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics_needs_key_but_not_identity(client) -> None:
    assert client.get("/metrics").status_code == 401
    response = client.get("/metrics", headers={"Authorization": "Bearer test-key"})
    assert response.status_code == 200
