from assistant.middleware.request_id import resolve_request_id


def test_request_id_is_added(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.headers.get("x-request-id")


def test_request_id_is_echoed(client, auth_headers) -> None:
    headers = {**auth_headers, "x-request-id": "req-abc"}
    response = client.get("/v1/chat/conversations", headers=headers)
    assert response.status_code == 200
    assert response.headers["x-request-id"] == "req-abc"


def test_error_envelope_carries_request_id(client, auth_headers) -> None:
    headers = {**auth_headers, "x-request-id": "req-missing"}
    response = client.get("/v1/chat/conversations/nope", headers=headers)
    assert response.status_code == 404
    assert response.json()["error"]["request_id"] == "req-missing"


def test_unsafe_request_id_is_replaced(client) -> None:
    unsafe = "abc\" onload=alert(1)"
    response = client.get("/healthz", headers={"x-request-id": unsafe})
    replaced = response.headers["x-request-id"]
    assert replaced != unsafe
    assert len(replaced) == 32

    denied = client.get("/v1/chat/conversations", headers={"x-request-id": "x" * 200})
    assert denied.status_code == 401
    assert denied.json()["error"]["request_id"] != "x" * 200


def test_resolve_request_id() -> None:
    assert resolve_request_id("trace-01:abc.def") == "trace-01:abc.def"
    assert resolve_request_id(None) != resolve_request_id(None)
    assert len(resolve_request_id("")) == 32
