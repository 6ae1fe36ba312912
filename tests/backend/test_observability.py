from __future__ import annotations


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "coaching_crm_requests_total" in body
    assert "coaching_crm_requests_5xx_total" in body
    assert "coaching_crm_open_sessions 0" in body


def test_metrics_track_sessions_and_lifecycle_events(client, auth_headers) -> None:
    created = client.post(
        "/inquiries",
        headers=auth_headers,
        json={
            "name": "Meera",
            "phone": "9000000001",
            "programOfInterestId": "p1",
            "employeeId": "asharaoinstitutetest",
            "inquiryDate": "2026-10-15",
        },
    )
    client.post(
        f"/inquiries/{created.json()['id']}/move-to-potential",
        headers=auth_headers,
        json={"remark": "keen"},
    )
    client.post("/auth/sign-in", json={"email": "nobody@institute.test", "password": "x"})

    body = client.get("/metrics").text
    assert "coaching_crm_open_sessions 1" in body
    assert 'coaching_crm_events_total{event="inquiries_moved"} 1' in body
    assert 'coaching_crm_events_total{event="precheck_rejected"} 1' in body
    assert 'route="/inquiries/{inquiry_id}/move-to-potential",status="200"' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"
