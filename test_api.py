"""
HTTP tests for the gateway routes.

The app runs with its real middleware, cache and exception handlers; only
the TDX client is replaced by the in-process fake from conftest.py.
"""

import pytest
from fastapi.testclient import TestClient

import main
from cache import TTLCache
from exceptions import AuthError, TDXConnectionError, TDXServiceError, TDXTimeoutError
from knowledge_service import KnowledgeService

API_KEY = "test-key"
ADMIN_KEY = "admin-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def gateway_env(monkeypatch):
    monkeypatch.setenv("API_KEY", API_KEY)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("RATE_LIMIT_MAX", "1000")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("TDX_TOKEN", raising=False)
    return monkeypatch


@pytest.fixture
def client(gateway_env, fake_tdx):
    service = KnowledgeService(cache=TTLCache(ttl_seconds=300), tdx_client=fake_tdx)
    main.app.dependency_overrides[main.get_knowledge_service] = lambda: service
    main.app.dependency_overrides[main.get_tdx_client] = lambda: fake_tdx

    with TestClient(main.app) as test_client:
        yield test_client

    main.app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_root_is_public(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["name"] == "TDX Knowledge Base Gateway"


def test_health_ok(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["environment"] == "test"
    assert body["services"] == {"api": "OK", "tdx": "OK", "cache": "OK"}


def test_health_reports_503_when_tdx_unreachable(client, fake_tdx):
    fake_tdx.probe_error = TDXConnectionError("TDX connection failed: connection refused")

    response = client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "ERROR"
    assert body["services"]["tdx"] == "ERROR"
    assert "connection refused" in body["error"]


def test_detailed_health_includes_configuration(client):
    response = client.get("/health/detailed")

    assert response.status_code == 200
    body = response.json()
    assert body["tdx_details"]["status"] == "Connected"
    assert body["configuration"]["cache"]["backend"] == "memory"
    assert body["configuration"]["tdx"]["auth_method"] == "static_token"
    assert "python_version" in body["system"]


# ---------------------------------------------------------------------------
# Authentication and rate limiting
# ---------------------------------------------------------------------------


def test_missing_api_key_is_401(client):
    response = client.get("/api/v1/articles/1")

    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "Unauthorized"
    assert body["message"].startswith("API key required")
    assert body["path"] == "/api/v1/articles/1"


def test_invalid_api_key_is_401(client):
    response = client.get("/api/v1/articles/1", headers={"X-API-Key": "nope"})

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid API key"


def test_bearer_api_key_is_accepted(client):
    response = client.get("/api/v1/articles/1", headers={"Authorization": f"Bearer {API_KEY}"})

    assert response.status_code == 200


def test_rate_limit_returns_429(gateway_env, fake_tdx):
    gateway_env.setenv("RATE_LIMIT_MAX", "2")
    main.app.dependency_overrides[main.get_knowledge_service] = lambda: KnowledgeService(TTLCache(), fake_tdx)
    try:
        with TestClient(main.app) as test_client:
            statuses = [test_client.get("/api/v1/articles/1", headers=HEADERS).status_code for _ in range(3)]
            limited = test_client.get("/api/v1/articles/1", headers=HEADERS)
    finally:
        main.app.dependency_overrides.clear()

    assert statuses == [200, 200, 429]
    assert limited.status_code == 429
    assert limited.json()["error"] == "Too Many Requests"
    assert limited.headers["X-RateLimit-Limit"] == "2"
    assert "Retry-After" in limited.headers


def test_rate_limit_headers_on_success(client):
    response = client.get("/api/v1/articles/1", headers=HEADERS)

    assert response.headers["X-RateLimit-Limit"] == "1000"
    assert int(response.headers["X-RateLimit-Remaining"]) == 999


def test_missing_api_key_configuration_outside_development_is_500(gateway_env, fake_tdx):
    gateway_env.delenv("API_KEY")
    gateway_env.delenv("ADMIN_API_KEY")
    gateway_env.setenv("ENVIRONMENT", "production")
    main.app.dependency_overrides[main.get_knowledge_service] = lambda: KnowledgeService(TTLCache(), fake_tdx)
    try:
        with TestClient(main.app) as test_client:
            response = test_client.get("/api/v1/articles/1", headers=HEADERS)
    finally:
        main.app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json()["message"] == "Authentication not properly configured"


def test_development_without_api_key_skips_auth(gateway_env, fake_tdx):
    gateway_env.delenv("API_KEY")
    gateway_env.delenv("ADMIN_API_KEY")
    gateway_env.setenv("ENVIRONMENT", "development")
    main.app.dependency_overrides[main.get_knowledge_service] = lambda: KnowledgeService(TTLCache(), fake_tdx)
    try:
        with TestClient(main.app) as test_client:
            response = test_client.get("/api/v1/articles/1")
    finally:
        main.app.dependency_overrides.clear()

    assert response.status_code == 200


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def test_search_returns_results_and_caches(client, fake_tdx):
    first = client.get("/api/v1/search", params={"query": "printer"}, headers=HEADERS)

    assert first.status_code == 200
    body = first.json()
    assert body["cached"] is False
    assert body["total_count"] == 2
    assert body["query"] == "printer"
    assert body["limit"] == 10
    assert body["offset"] == 0
    assert [a["id"] for a in body["articles"]] == [2, 3]

    second = client.get("/api/v1/search", params={"query": "printer"}, headers=HEADERS)
    assert second.json()["cached"] is True
    assert fake_tdx.calls["search_articles"] == 1


def test_search_query_is_trimmed(client, fake_tdx):
    client.get("/api/v1/search", params={"query": "printer"}, headers=HEADERS)

    response = client.get("/api/v1/search", params={"query": "  printer  "}, headers=HEADERS)

    assert response.json()["cached"] is True
    assert fake_tdx.calls["search_articles"] == 1


def test_search_filters_by_category(client):
    response = client.get("/api/v1/search", params={"query": "e", "category": "10"}, headers=HEADERS)

    assert response.status_code == 200
    assert [a["id"] for a in response.json()["articles"]] == [1]
    assert response.json()["category"] == "10"


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"query": ""},
        {"query": "   "},
        {"query": "x" * 501},
        {"query": "printer", "limit": 100},
        {"query": "printer", "limit": 0},
        {"query": "printer", "offset": -1},
        {"query": "printer", "category": "c" * 101},
    ],
)
def test_search_validation_errors(client, fake_tdx, params):
    response = client.get("/api/v1/search", params=params, headers=HEADERS)

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation Error"
    assert body["details"]
    assert fake_tdx.calls["search_articles"] == 0


def test_search_upstream_failure_is_502(client, fake_tdx):
    fake_tdx.search_error = TDXServiceError("Search failed", upstream_status=503, upstream_status_text="Service Unavailable")

    response = client.get("/api/v1/search", params={"query": "printer"}, headers=HEADERS)

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "TDX Service Error"
    assert "upstream_status" not in body


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


def test_get_article_and_cached_flag(client, fake_tdx):
    first = client.get("/api/v1/articles/1", headers=HEADERS)

    assert first.status_code == 200
    body = first.json()
    assert body["id"] == 1
    assert body["title"] == "Reset your password"
    assert body["author"] == {"name": "Service Desk", "email": "help@example.edu"}
    assert body["cached"] is False
    assert "timestamp" in body

    second = client.get("/api/v1/articles/1", headers=HEADERS)
    assert second.json()["cached"] is True
    assert fake_tdx.calls["get_article"] == 1


def test_get_article_not_found(client):
    response = client.get("/api/v1/articles/999", headers=HEADERS)

    assert response.status_code == 404
    assert response.json() == {"error": "Not Found", "message": "Article with ID 999 not found"}


@pytest.mark.parametrize("article_id", ["invalid", "0", "-5"])
def test_get_article_invalid_id_is_400(client, fake_tdx, article_id):
    response = client.get(f"/api/v1/articles/{article_id}", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "Validation Error"
    assert fake_tdx.calls["get_article"] == 0


def test_get_article_service_error_is_502(client, fake_tdx):
    fake_tdx.article_errors[1] = TDXServiceError("Article fetch failed", upstream_status=500)

    response = client.get("/api/v1/articles/1", headers=HEADERS)

    assert response.status_code == 502
    assert response.json()["message"] == "Failed to communicate with TeamDynamix"


def test_get_article_timeout_is_504(client, fake_tdx):
    fake_tdx.article_errors[1] = TDXTimeoutError("Article fetch failed")

    response = client.get("/api/v1/articles/1", headers=HEADERS)

    assert response.status_code == 504
    assert response.json()["error"] == "Gateway Timeout"


def test_get_article_auth_error_is_500(client, fake_tdx):
    fake_tdx.article_errors[1] = AuthError("No authentication method configured")

    response = client.get("/api/v1/articles/1", headers=HEADERS)

    assert response.status_code == 500
    assert response.json()["error"] == "TDX Configuration Error"


def test_batch_articles_omits_unresolved_ids(client, fake_tdx):
    fake_tdx.article_errors[3] = TDXServiceError("Article fetch failed", upstream_status=500)

    response = client.get("/api/v1/articles", params={"ids": "1, 2,3,999"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["requested_count"] == 4
    assert body["found_count"] == 2
    assert [a["id"] for a in body["articles"]] == [1, 2]
    assert all(a["cached"] is False for a in body["articles"])


@pytest.mark.parametrize(
    "params, message",
    [
        ({}, "ids parameter is required"),
        ({"ids": ""}, "ids parameter is required"),
        ({"ids": "1,abc"}, "Invalid article ID: abc"),
        ({"ids": "1,0"}, "Invalid article ID: 0"),
        ({"ids": "1_0,2"}, "Invalid article ID: 1_0"),
        ({"ids": "+5"}, "Invalid article ID: +5"),
        ({"ids": "1,\u0663"}, "Invalid article ID: \u0663"),
        ({"ids": ",".join(str(i) for i in range(1, 22))}, "Maximum 20 articles can be requested at once"),
    ],
)
def test_batch_articles_bad_requests(client, fake_tdx, params, message):
    response = client.get("/api/v1/articles", params=params, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["message"] == message
    assert fake_tdx.calls["get_article"] == 0


# ---------------------------------------------------------------------------
# Admin, metrics and unknown routes
# ---------------------------------------------------------------------------


def test_cache_admin_requires_admin_key(client):
    response = client.get("/api/v1/cache/stats", headers=HEADERS)

    assert response.status_code == 403


def test_cache_admin_stats_and_clear(client):
    admin = {"X-API-Key": ADMIN_KEY}
    client.get("/api/v1/articles/1", headers=HEADERS)
    client.get("/api/v1/search", params={"query": "printer"}, headers=HEADERS)

    stats = client.get("/api/v1/cache/stats", headers=admin)
    assert stats.status_code == 200
    assert stats.json()["stored_items"] == 2

    cleared = client.delete("/api/v1/cache", params={"kind": "article"}, headers=admin)
    assert cleared.json() == {"status": "success", "deleted_keys": 1}

    again = client.get("/api/v1/articles/1", headers=HEADERS)
    assert again.json()["cached"] is False


def test_metrics_endpoint_exposes_gateway_metrics(client):
    client.get("/api/v1/articles/1", headers=HEADERS)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "tdx_gateway_requests_total" in response.text
    assert "tdx_gateway_cache_lookups_total" in response.text


def test_unknown_route_lists_endpoints(client):
    response = client.get("/does-not-exist")

    assert response.status_code == 404
    body = response.json()
    assert body["message"] == "Cannot GET /does-not-exist"
    assert "GET /api/v1/search" in body["availableEndpoints"]


def test_invalidate_single_article_requires_admin(client, fake_tdx):
    client.get("/api/v1/articles/1", headers=HEADERS)

    forbidden = client.delete("/api/v1/cache/articles/1", headers=HEADERS)
    assert forbidden.status_code == 403

    response = client.delete("/api/v1/cache/articles/1", headers={"X-API-Key": ADMIN_KEY})
    assert response.json() == {"status": "success", "deleted_keys": 1}

    again = client.get("/api/v1/articles/1", headers=HEADERS)
    assert again.json()["cached"] is False
    assert fake_tdx.calls["get_article"] == 2
