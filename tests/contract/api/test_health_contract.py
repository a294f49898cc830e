def test_health_check_contract(client):
    """Contract test for health check endpoint
    Verifies the response schema and format matches the API contract
    """
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.json()

    # Schema validation
    assert isinstance(data, dict)
    assert "status" in data
    assert "services" in data
    assert "timestamp" in data

    # Type validation
    assert isinstance(data["status"], str)
    assert isinstance(data["services"], dict)

    # Value validation
    assert data["status"] in ["healthy", "degraded", "unhealthy"]
    assert set(data["services"]) == {"chain", "template_cache", "metrics", "websocket"}
    assert data["chain"]["block_number"] == 100


def test_health_reports_template_cache_state(client, chain_reader):
    before = client.get("/api/v1/health").json()
    client.get("/api/v1/collectibles")
    after = client.get("/api/v1/health").json()

    assert before["services"]["template_cache"] == "degraded"
    assert after["services"]["template_cache"] == "healthy"
    assert after["template_cache"]["last_refreshed_at"].endswith("Z")


def test_health_reports_chain_outage(client, chain_reader):
    chain_reader.block_number_errors = [ConnectionError("connection refused")]

    data = client.get("/api/v1/health").json()

    assert data["status"] == "unhealthy"
    assert data["services"]["chain"] == "unhealthy"


def test_metrics_contract(client):
    response = client.get("/api/v1/metrics")

    assert response.status_code == 200
    data = response.json()
    assert {"claims", "last_hour", "template_cache", "history", "timestamp"} <= set(data)
