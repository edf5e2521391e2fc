from uuid import uuid4

from models import EntitlementStatus, IntakeSubmission, Profile, ScoreHistory, WeeklyCheckin


def test_ensure_profile_is_idempotent(client, headers, db_session, user_id):
    first = client.post("/v1/profile/ensure", json={}, headers=headers)
    second = client.post("/v1/profile/ensure", json={"timezone": "Europe/Berlin"}, headers=headers)
    third = client.post("/v1/profile/ensure", json={}, headers=headers)

    assert first.status_code == 200
    assert first.json()["entitlement_status"] == EntitlementStatus.NONE
    assert second.json()["timezone"] == "Europe/Berlin"
    # Omitting the timezone leaves the stored one alone.
    assert third.json()["timezone"] == "Europe/Berlin"
    assert db_session.query(Profile).filter(Profile.user_id == user_id).count() == 1


def test_ensure_profile_rejects_unknown_timezone(client, headers):
    resp = client.post("/v1/profile/ensure", json={"timezone": "Mars/Olympus_Mons"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "INVALID_PAYLOAD_TIMEZONE"


def test_entitlement_without_profile_is_empty_and_writes_nothing(client, headers, db_session):
    resp = client.get("/v1/entitlement", headers=headers)

    assert resp.status_code == 200
    data = resp.json()
    assert data["entitlement_status"] == EntitlementStatus.NONE
    assert data["current_week_number"] is None
    assert data["is_week_due"] is False
    assert db_session.query(Profile).count() == 0


def test_intake_estimate_derives_preferences(client, headers):
    resp = client.post(
        "/v1/estimates",
        json={
            "source": "intake",
            "payload": {"schema_version": 3, "height_unit": "imperial", "smoke_now": "yes", "smoke_type": "vape"},
        },
        headers=headers,
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["score"] == 550.0
    assert resp.json()["potential"] == 0.15

    snapshot = client.get("/v1/entitlement", headers=headers).json()
    assert snapshot["measurement_prefs"] == {"height": "imperial"}
    assert snapshot["smoking_prefs"] == {"cigarettes": False, "vape": True, "weed": False}
    assert snapshot["last_result"]["source"] == "intake"


def test_recalc_keeps_intake_potential(client, headers):
    client.post("/v1/estimates", json={"source": "intake", "payload": {}}, headers=headers)

    resp = client.post("/v1/estimates", json={"source": "recalc", "payload": {}}, headers=headers)

    assert resp.json()["score"] == 560.0
    last = client.get("/v1/entitlement", headers=headers).json()["last_result"]
    assert last["source"] == "recalc"
    assert last["potential"] == 0.15


def test_estimate_rejects_weekly_source(client, headers):
    resp = client.post("/v1/estimates", json={"source": "weekly_checkin", "payload": {}}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "INVALID_PAYLOAD"


def test_delete_profile_removes_user_data(client, headers, db_session, user_id):
    client.post("/v1/estimates", json={"source": "intake", "payload": {"smoke_now": False}}, headers=headers)
    client.post(
        "/v1/checkins/weekly",
        json={"checkin_id": str(uuid4()), "week_number": 1, "payload": {}, "completed_at": "2024-03-08T11:00:00Z"},
        headers=headers,
    )

    resp = client.delete("/v1/profile", headers=headers)

    assert resp.status_code == 204
    db_session.expire_all()
    assert db_session.get(Profile, user_id) is None
    assert db_session.query(ScoreHistory).filter(ScoreHistory.user_id == user_id).count() == 0
    assert db_session.query(WeeklyCheckin).filter(WeeklyCheckin.user_id == user_id).count() == 0
    assert db_session.query(IntakeSubmission).filter(IntakeSubmission.user_id == user_id).count() == 0
    assert client.get("/v1/entitlement", headers=headers).json()["entitlement_status"] == EntitlementStatus.NONE

    assert client.delete("/v1/profile", headers=headers).status_code == 204


def test_health_and_ping(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert client.get("/ping").json() == {"pong": True}
