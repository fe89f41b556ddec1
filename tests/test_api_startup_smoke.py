from fastapi.testclient import TestClient


REQUIRED_ROUTES = {
    "/api/auth/brute-force",
    "/api/admin/security/accounts/{identifier}",
    "/api/admin/security/accounts/{identifier}/reset",
    "/api/admin/security/ip-blocks/{ip_address}",
    "/api/admin/security/metrics",
    "/api/admin/security/prune",
    "/health",
}


def test_api_startup_and_router_registration(monkeypatch):
    from login_guard import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)

    with TestClient(main.app) as client:
        response = client.get("/")
        docs_response = client.get("/docs")
        openapi_response = client.get("/openapi.json")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert docs_response.status_code == 200
    assert openapi_response.status_code == 200

    paths = {getattr(route, "path", None) for route in main.app.routes}
    assert REQUIRED_ROUTES.issubset(paths)


def test_brute_force_endpoint_unavailable_before_guard_is_built(monkeypatch):
    from login_guard import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)
    monkeypatch.delattr(main.app.state, "guard", raising=False)

    with TestClient(main.app) as client:
        response = client.post("/api/auth/brute-force", json={"action": "status", "email": "a@b.c"})

    assert response.status_code == 503
