from datetime import datetime, timezone

import pytest

from proctoring import create_proctoring_blueprint, parse_event_time, summarize


@pytest.fixture
def client(db, deps, app_factory, bank):
    db.add_certificate(questions=bank(4))
    db.exams[1] = {"id": 1, "user_id": "u-1", "status": "in-progress"}
    app = app_factory(create_proctoring_blueprint("", deps), user_id="session-user")
    return app.test_client()


def test_record_defaults_severity_and_keeps_metadata(client, db):
    resp = client.post("/api/proctoring/event", json={
        "exam_id": "1", "user_id": "u-1", "event_type": "face_not_detected",
        "metadata": {"confidence": 0.2},
    })
    assert resp.status_code == 201
    ev = resp.get_json()["data"]
    assert ev["severity"] == "medium"
    assert ev["metadata"] == {"confidence": 0.2}
    assert ev["user_id"] == "u-1"
    assert db.events[1]["exam_id"] == 1


def test_record_uses_request_identity_not_a_placeholder(client, db):
    resp = client.post("/api/proctoring/event", json={"exam_id": 1, "eventType": "tab_switch"})
    assert resp.status_code == 201
    assert db.events[1]["user_id"] == "session-user"


def test_record_requires_identity(db, deps, app_factory):
    db.exams[1] = {"id": 1, "user_id": "u-1", "status": "in-progress"}
    client = app_factory(create_proctoring_blueprint("", deps)).test_client()
    resp = client.post("/api/proctoring/event", json={"exam_id": 1, "event_type": "tab_switch"})
    assert resp.status_code == 400
    assert db.events == {}


@pytest.mark.parametrize("body,status", [
    ({"exam_id": 1, "event_type": "camera_access_denied"}, 400),
    ({"exam_id": 1, "event_type": "tab_switch", "severity": "critical"}, 400),
    ({"exam_id": 1, "event_type": "tab_switch", "metadata": ["x"]}, 400),
    ({"event_type": "tab_switch"}, 400),
    ({"exam_id": 404, "event_type": "tab_switch"}, 404),
])
def test_record_rejects_bad_events(client, db, body, status):
    resp = client.post("/api/proctoring/event", json=body)
    assert resp.status_code == status
    assert resp.get_json()["ok"] is False
    assert db.events == {}


def test_repeated_events_are_all_kept(client, db):
    for _ in range(3):
        client.post("/api/proctoring/event", json={"exam_id": 1, "event_type": "window_blur", "severity": "low"})
    summary = client.get("/api/proctoring/exam/1").get_json()["data"]
    assert summary["total"] == 3
    assert summary["by_type"] == {"window_blur": 3}
    assert summary["by_severity"] == {"low": 3, "medium": 0, "high": 0}


def test_summary_is_chronological_by_event_time(client, db):
    late = "2024-05-01T10:00:05Z"
    early = 1714557600000  # 2024-05-01T10:00:00Z in epoch ms
    client.post("/api/proctoring/event", json={"exam_id": 1, "event_type": "sound_detected",
                                               "severity": "low", "timestamp": late})
    client.post("/api/proctoring/event", json={"exam_id": 1, "event_type": "multiple_faces",
                                               "severity": "high", "timestamp": early})

    events = client.get("/api/proctoring/exam/1").get_json()["data"]["events"]
    assert [e["event_type"] for e in events] == ["multiple_faces", "sound_detected"]
    assert events[1]["metadata"]["client_timestamp"] == late


def test_summarize_sorts_out_of_order_rows():
    t1 = datetime(2024, 5, 1, 10, 0, 1, tzinfo=timezone.utc)
    t2 = datetime(2024, 5, 1, 10, 0, 2, tzinfo=timezone.utc)
    rows = [
        {"id": 2, "exam_id": 1, "event_type": "tab_switch", "severity": "high", "created_at": t2},
        {"id": 3, "exam_id": 1, "event_type": "tab_switch", "severity": "low", "created_at": t1},
        {"id": 1, "exam_id": 1, "event_type": "window_blur", "severity": "medium", "created_at": t1},
    ]
    out = summarize(rows)
    assert [e["id"] for e in out["events"]] == ["1", "3", "2"]
    assert out["by_type"] == {"window_blur": 1, "tab_switch": 2}


def test_parse_event_time():
    assert parse_event_time(1714557600000) == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_event_time("2024-05-01T10:00:00") == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_event_time("yesterday") is None
    assert parse_event_time(None) is None
    assert parse_event_time(True) is None


def test_summary_for_unknown_exam(client):
    assert client.get("/api/proctoring/exam/55").status_code == 404
