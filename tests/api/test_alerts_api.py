from observability.alerts import AlertSeverity


def test_no_alerts(client):
    response = client.get("/api/v1/alerts")

    assert response.status_code == 200
    assert response.json() == []


def test_overflow_alert_is_listed_once(client, engine):
    engine.buffer.capacity = 1
    client.post(
        "/api/v1/events",
        json=[{"subjectId": f"u{i}", "kind": "page_view"} for i in range(4)],
    )

    data = client.get("/api/v1/alerts").json()

    overflow = [a for a in data if a["kind"] == "buffer_overflow"]
    assert len(overflow) == 1
    assert overflow[0]["scope"] == "ingestion"
    assert overflow[0]["severity"] == "warning"


def test_limit(client, engine):
    for scope in ("a", "b", "c"):
        engine.alerts.maybe_emit(
            "high_drop_off", scope=scope, severity=AlertSeverity.WARNING, message=f"drop at {scope}"
        )

    data = client.get("/api/v1/alerts", params={"limit": 2}).json()

    assert [a["scope"] for a in data] == ["c", "b"]
