from __future__ import annotations

from fastapi.testclient import TestClient

from carbonledger.api.app import create_app


def test_request_size_limit_returns_413(monkeypatch):
    # Make limit very small for test determinism.
    monkeypatch.setenv("CARBON_MAX_REQUEST_BYTES", "128")
    monkeypatch.delenv("CARBON_SIZE_LIMIT_DISABLE", raising=False)

    app = create_app(boot_runtime=False)
    c = TestClient(app)

    payload = {"tx_type": "EMISSION_LOG", "signer": "a", "nonce": 1, "payload": {"pad": "x" * 500}, "sig": ""}

    r = c.post("/v1/tx/submit", json=payload)
    assert r.status_code == 413

    j = r.json()
    assert j.get("ok") is False
    assert isinstance(j.get("error"), dict)
    assert j["error"].get("code") == "tx_too_large"


def test_size_limit_can_be_disabled(monkeypatch):
    monkeypatch.setenv("CARBON_MAX_REQUEST_BYTES", "128")
    monkeypatch.setenv("CARBON_SIZE_LIMIT_DISABLE", "1")

    c = TestClient(create_app(boot_runtime=False))
    r = c.post("/v1/tx/submit", json={"pad": "x" * 500})
    # Passes the limiter; fails later because no executor is attached.
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "not_ready"


def test_health_is_exempt_from_limit(monkeypatch):
    monkeypatch.setenv("CARBON_MAX_REQUEST_BYTES", "1")
    c = TestClient(create_app(boot_runtime=False))
    assert c.get("/v1/health").status_code == 200
