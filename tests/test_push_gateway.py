import time
from dataclasses import replace

import pytest

from carebridge import main
from carebridge.config import get_settings
from carebridge.db.models import NotificationType


def _join(ws, user_id, device_id="web"):
    ws.send_json({"type": "SESSION_JOIN", "userId": user_id, "deviceId": device_id})


def _receive_until(ws, frame_type, limit=20):
    """Return the next frame of *frame_type*, skipping heartbeats."""

    for _ in range(limit):
        frame = ws.receive_json()
        if frame["type"] == frame_type:
            return frame
        assert frame["type"] == "PING", frame
    raise AssertionError(f"no {frame_type} frame received")


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def fast_heartbeat(monkeypatch):
    def _apply(**overrides):
        settings = replace(get_settings(), push_heartbeat_seconds=0.1, **overrides)
        monkeypatch.setattr(main.push_gateway, "_settings", settings)
        return settings

    return _apply


def test_garbage_before_join_is_ignored(client, care_team):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_json({"type": "UNKNOWN"})
        ws.send_json({"type": "SESSION_JOIN", "userId": "abc"})
        _join(ws, care_team.patient_user.id)

        frame = ws.receive_json()

    assert frame == {"type": "BOOTSTRAP", "payload": {"unreadCount": 0, "notifications": []}}


def test_bootstrap_lists_unread_notifications(client, care_team, notifications):
    read = notifications.create(care_team.patient_user.id, NotificationType.MESSAGE, "message", None, {"n": 1})
    unread = notifications.create(care_team.patient_user.id, NotificationType.MESSAGE, "message", None, {"n": 2})
    notifications.mark_read(read.id)

    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        frame = _receive_until(ws, "BOOTSTRAP")

    assert frame["payload"]["unreadCount"] == 1
    assert [item["notificationId"] for item in frame["payload"]["notifications"]] == [unread.id]


def test_pending_goal_reaches_connected_clinician(client, care_team, auth_headers):
    goal = main.goal_service.create(care_team.patient.id, "Walk 30 min", status="pending_approval")

    with client.websocket_connect("/ws", headers=auth_headers(care_team.clinician_user)) as ws:
        _join(ws, care_team.clinician_user.id)
        _receive_until(ws, "BOOTSTRAP")

        response = client.post(
            "/realtime/pending-goal",
            json={"goalId": goal.id},
            headers=auth_headers(care_team.patient_user),
        )
        assert response.status_code == 200
        frame = _receive_until(ws, "GOAL_PENDING")

    body = response.json()
    assert body["ok"] is True
    assert frame["payload"]["id"] == goal.id
    assert frame["payload"]["title"] == "Walk 30 min"
    assert frame["payload"]["patient"] == "Pat Doe"
    assert frame["payload"]["notificationId"] == body["notificationId"]


def test_approval_pushes_to_every_patient_device(client, care_team, auth_headers):
    goal = main.goal_service.create(care_team.patient.id, "Walk daily", status="pending_approval")
    patient_id = care_team.patient_user.id

    with client.websocket_connect("/ws") as phone, client.websocket_connect("/ws") as laptop:
        _join(phone, patient_id, "phone")
        _receive_until(phone, "BOOTSTRAP")
        _join(laptop, patient_id, "laptop")
        _receive_until(laptop, "BOOTSTRAP")

        response = client.patch(
            f"/patients/goals/{goal.id}",
            json={"status": "active"},
            headers=auth_headers(care_team.clinician_user),
        )
        assert response.status_code == 200

        first = _receive_until(phone, "GOAL_APPROVED")
        second = _receive_until(laptop, "GOAL_APPROVED")

    assert first == second
    assert first["payload"]["goalId"] == goal.id
    assert first["payload"]["title"] == "Walk daily"


def test_offline_notifications_arrive_in_bootstrap(client, care_team, auth_headers):
    admin_headers = auth_headers(care_team.admin)
    patient_id = care_team.patient_user.id

    with client.websocket_connect("/ws") as ws:
        _join(ws, patient_id)
        _receive_until(ws, "BOOTSTRAP")
        client.post("/admin/announcements", json={"title": "One", "message": "First"}, headers=admin_headers)
        live = _receive_until(ws, "ANNOUNCEMENT")
    assert live["payload"]["title"] == "One"

    client.post("/admin/announcements", json={"title": "Two", "message": "Second"}, headers=admin_headers)

    with client.websocket_connect("/ws") as ws:
        _join(ws, patient_id)
        bootstrap = _receive_until(ws, "BOOTSTRAP")

    assert bootstrap["payload"]["unreadCount"] == 2
    history = client.get(f"/notifications/{patient_id}", headers=auth_headers(care_team.patient_user)).json()
    assert [item["payload"]["title"] for item in history] == ["Two", "One"]
    assert all(item["type"] == "ANNOUNCEMENT" for item in history)


def test_ack_marks_only_own_notifications(client, care_team, notifications):
    own = notifications.create(care_team.patient_user.id, NotificationType.MESSAGE, "message", None, {})
    foreign = notifications.create(care_team.clinician_user.id, NotificationType.MESSAGE, "message", None, {})

    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        _receive_until(ws, "BOOTSTRAP")
        ws.send_json({"type": "notif:ack", "notificationId": foreign.id})
        ws.send_json({"type": "notif:ack", "notificationId": own.id})
        assert _wait_for(lambda: notifications.get(own.id).read_at is not None)

    assert notifications.get(foreign.id).read_at is None


def test_ack_before_join_is_ignored(client, care_team, notifications):
    row = notifications.create(care_team.patient_user.id, NotificationType.MESSAGE, "message", None, {})

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "notif:ack", "notificationId": row.id})
        _join(ws, care_team.patient_user.id)
        bootstrap = _receive_until(ws, "BOOTSTRAP")

    assert bootstrap["payload"]["unreadCount"] == 1
    assert notifications.get(row.id).read_at is None


def test_repeated_join_is_ignored(client, care_team):
    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        _receive_until(ws, "BOOTSTRAP")
        _join(ws, care_team.clinician_user.id)

        assert _wait_for(lambda: client.portal.call(main.registry.connected_users) == [care_team.patient_user.id])


def test_lab_read_over_socket(client, care_team, auth_headers):
    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        _receive_until(ws, "BOOTSTRAP")

        response = client.post(
            "/labs",
            json={"patientId": care_team.patient.id, "lab_type": "HbA1c", "lab_value": 6.4, "unit": "%"},
            headers=auth_headers(care_team.clinician_user),
        )
        assert response.status_code == 201
        lab_id = response.json()["labId"]
        frame = _receive_until(ws, "LAB_NEW")
        assert frame["payload"]["labId"] == lab_id
        assert frame["payload"]["testType"] == "HbA1c"

        ws.send_json({"type": "lab:read", "labId": lab_id})
        assert _wait_for(lambda: main.lab_service.list_for_user(care_team.patient_user.id)[0].read_at is not None)


def test_lab_read_for_someone_elses_lab_is_ignored(client, care_team, make_user, notifications, auth_headers):
    response = client.post(
        "/labs",
        json={"patientId": care_team.patient.id, "lab_type": "Lipid panel"},
        headers=auth_headers(care_team.clinician_user),
    )
    lab_id = response.json()["labId"]
    stranger = make_user("stranger")
    marker = notifications.create(stranger.id, NotificationType.MESSAGE, "message", None, {})

    with client.websocket_connect("/ws") as ws:
        _join(ws, stranger.id)
        _receive_until(ws, "BOOTSTRAP")
        ws.send_json({"type": "lab:read", "labId": lab_id})
        ws.send_json({"type": "lab:read", "labId": 9999})
        ws.send_json({"type": "notif:ack", "notificationId": marker.id})
        assert _wait_for(lambda: notifications.get(marker.id).read_at is not None)

    assert main.lab_service.list_for_user(care_team.patient_user.id)[0].read_at is None


def test_medication_assignment_is_pushed(client, care_team, auth_headers):
    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        _receive_until(ws, "BOOTSTRAP")
        response = client.post(
            f"/patients/{care_team.patient.id}/medications",
            json={"medicine_name": "Metformin", "dosage": "500mg"},
            headers=auth_headers(care_team.clinician_user),
        )
        frame = _receive_until(ws, "MEDICATION_ASSIGNED")

    assert frame["payload"]["medicationId"] == response.json()["medication"]["id"]
    assert frame["payload"]["title"] == "New Medication Assigned"


def test_heartbeat_pings_idle_connection(client, care_team, fast_heartbeat):
    fast_heartbeat()

    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        _receive_until(ws, "BOOTSTRAP")
        ping = ws.receive_json()

    assert ping["type"] == "PING"
    assert ping["payload"]["ts"].endswith("Z")


def test_join_with_mismatched_token_is_ignored(client, care_team, auth_headers, fast_heartbeat):
    fast_heartbeat()
    headers = auth_headers(care_team.patient_user)

    with client.websocket_connect("/ws", headers=headers) as ws:
        _join(ws, care_team.clinician_user.id)
        assert ws.receive_json()["type"] == "PING"

        _join(ws, care_team.patient_user.id)
        bootstrap = _receive_until(ws, "BOOTSTRAP")

    assert bootstrap["payload"]["unreadCount"] == 0


def test_query_token_is_accepted(client, care_team):
    from carebridge.auth import create_access_token

    token = create_access_token(care_team.patient_user)
    with client.websocket_connect(f"/ws?token={token}") as ws:
        _join(ws, care_team.patient_user.id)
        assert _receive_until(ws, "BOOTSTRAP")["type"] == "BOOTSTRAP"


def test_required_token_blocks_anonymous_join(client, care_team, fast_heartbeat):
    fast_heartbeat(push_require_token=True)

    with client.websocket_connect("/ws") as ws:
        _join(ws, care_team.patient_user.id)
        assert ws.receive_json()["type"] == "PING"

    assert client.portal.call(main.registry.connected_users) == []
