import json
from datetime import datetime, timezone

import pytest

from carebridge.db.models import Notification
from carebridge.frames import (
    LabReadFrame,
    NotificationAckFrame,
    PingFrame,
    SessionJoinFrame,
    bootstrap_frame,
    frame_for_notification,
    parse_inbound,
)


def _notification(kind, payload, entity=None, entity_id=None):
    return Notification(
        id=11,
        user_id=3,
        type=kind,
        entity=entity,
        entity_id=entity_id,
        payload=payload,
        created_at=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        read_at=None,
    )


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"type": "SOMETHING_ELSE", "userId": 1}),
        json.dumps({"type": "SESSION_JOIN"}),
        json.dumps({"type": "SESSION_JOIN", "userId": 0}),
        json.dumps({"type": "SESSION_JOIN", "userId": "abc"}),
        json.dumps({"type": "notif:ack"}),
        json.dumps({"type": "lab:read", "labId": -2}),
    ],
)
def test_parse_inbound_ignores_invalid_frames(raw):
    assert parse_inbound(raw) is None


def test_parse_inbound_session_join():
    frame = parse_inbound(json.dumps({"type": "SESSION_JOIN", "userId": 42, "deviceId": "x" * 100}))

    assert isinstance(frame, SessionJoinFrame)
    assert frame.user_id == 42
    assert frame.device_id == "x" * 64


def test_parse_inbound_join_without_device():
    frame = parse_inbound(json.dumps({"type": "SESSION_JOIN", "userId": 5, "deviceId": None}))
    assert frame.device_id == ""


def test_parse_inbound_ack_and_lab_read():
    ack = parse_inbound(json.dumps({"type": "notif:ack", "notificationId": 9}))
    lab = parse_inbound(json.dumps({"type": "lab:read", "labId": 4, "extra": True}))

    assert isinstance(ack, NotificationAckFrame)
    assert ack.notification_id == 9
    assert isinstance(lab, LabReadFrame)
    assert lab.lab_id == 4


def test_goal_approved_frame():
    frame = frame_for_notification(
        _notification("GOAL_APPROVED", {"goalId": 7, "title": "Walk", "message": "Approved"}, "goal", 7)
    )
    assert frame.to_wire() == {
        "type": "GOAL_APPROVED",
        "payload": {
            "notificationId": 11,
            "goalId": 7,
            "title": "Walk",
            "message": "Approved",
            "created_at": "2024-05-01T09:30:00Z",
        },
    }


def test_goal_pending_frame():
    frame = frame_for_notification(
        _notification(
            "GOAL_PENDING",
            {"id": 7, "title": "Walk", "description": None, "patient": "Pat Doe", "submitted": "2024-05-01T09:00:00Z"},
            "goal",
            7,
        )
    )
    wire = frame.to_wire()
    assert wire["type"] == "GOAL_PENDING"
    assert wire["payload"] == {
        "id": 7,
        "title": "Walk",
        "description": None,
        "patient": "Pat Doe",
        "submitted": "2024-05-01T09:00:00Z",
        "notificationId": 11,
    }


def test_lab_frame_uses_lab_type_as_title():
    frame = frame_for_notification(
        _notification("LAB_NEW", {"labId": 2, "lab_type": "HbA1c", "created_at": "2024-05-01T08:00:00Z"}, "lab_result", 2)
    )
    payload = frame.to_wire()["payload"]
    assert payload["title"] == "HbA1c"
    assert payload["testType"] == "HbA1c"
    assert payload["labId"] == 2
    assert payload["resultAt"] == "2024-05-01T08:00:00Z"


def test_announcement_and_medication_frames():
    announcement = frame_for_notification(
        _notification("ANNOUNCEMENT", {"title": "Closed", "message": "Holiday"}, "announcement")
    )
    medication = frame_for_notification(
        _notification("MEDICATION_ASSIGNED", {"medicationId": 5, "title": "New Medication Assigned", "message": "Metformin"}, "medication", 5)
    )

    assert announcement.to_wire()["type"] == "ANNOUNCEMENT"
    assert announcement.to_wire()["payload"]["title"] == "Closed"
    assert medication.to_wire()["type"] == "MEDICATION_ASSIGNED"
    assert medication.to_wire()["payload"]["medicationId"] == 5


def test_unknown_notification_type_has_no_frame():
    assert frame_for_notification(_notification("CUSTOM_EVENT", {})) is None


def test_bootstrap_frame_summarises_rows():
    wire = bootstrap_frame(3, [_notification("MESSAGE", {"title": "Hi"}, "message")]).to_wire()

    assert wire["type"] == "BOOTSTRAP"
    assert wire["payload"]["unreadCount"] == 3
    assert wire["payload"]["notifications"] == [
        {
            "notificationId": 11,
            "type": "MESSAGE",
            "entity": "message",
            "entityId": None,
            "payload": {"title": "Hi"},
            "created_at": "2024-05-01T09:30:00Z",
        }
    ]


def test_ping_frame_carries_timestamp():
    wire = PingFrame().to_wire()
    assert wire["type"] == "PING"
    assert wire["payload"]["ts"].endswith("Z")
