def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["app"] == "Conversion Intelligence"
    assert data["environment"] == "test"


def test_health_check(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(client):
    response = client.get("/api/v1/health", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"


def test_health_ingestion(client, engine):
    client.post("/api/v1/events", json={"subjectId": "u1", "kind": "page_view"})
    engine.flush()

    response = client.get("/api/v1/health/ingestion")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["buffer"]["accepted"] == 1
    assert data["buffer"]["size"] == 0
    assert data["processor"]["processed"] == 1


def test_health_ingestion_degraded_after_overflow(client, engine):
    engine.buffer.capacity = 1
    client.post(
        "/api/v1/events",
        json=[{"subjectId": f"u{i}", "kind": "page_view"} for i in range(3)],
    )

    data = client.get("/api/v1/health/ingestion").json()

    assert data["status"] == "degraded"
    assert data["buffer"]["dropped"] == 2
