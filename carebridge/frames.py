"""Wire frames exchanged over the push connection.

Every frame is a JSON object discriminated by ``type``. Inbound frames are
parsed leniently: anything that is not JSON, has an unknown ``type`` or fails
validation yields ``None`` and the gateway ignores it. Outbound frames are
always ``{"type": ..., "payload": {...}}``.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from carebridge.db.models import Notification, NotificationType
from carebridge.time_utils import iso_timestamp, utc_now

DEVICE_ID_MAX_LENGTH = 64


# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------


class _InboundFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionJoinFrame(_InboundFrame):
    type: Literal["SESSION_JOIN"]
    user_id: int = Field(alias="userId", gt=0)
    device_id: str = Field(default="", alias="deviceId")

    @field_validator("device_id", mode="before")
    @classmethod
    def _truncate_device(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)[:DEVICE_ID_MAX_LENGTH]


class NotificationAckFrame(_InboundFrame):
    type: Literal["notif:ack"]
    notification_id: int = Field(alias="notificationId", gt=0)


class LabReadFrame(_InboundFrame):
    type: Literal["lab:read"]
    lab_id: int = Field(alias="labId", gt=0)


InboundFrame = Annotated[
    Union[SessionJoinFrame, NotificationAckFrame, LabReadFrame],
    Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundFrame)
INBOUND_TYPES = frozenset({"SESSION_JOIN", "notif:ack", "lab:read"})


def parse_inbound(raw: Union[str, bytes]) -> Optional[Union[SessionJoinFrame, NotificationAckFrame, LabReadFrame]]:
    """Return the typed frame for *raw* or ``None`` when it should be ignored."""

    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("type") not in INBOUND_TYPES:
        return None
    try:
        return _INBOUND_ADAPTER.validate_python(data)
    except ValidationError:
        return None


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------


class NotificationSummary(BaseModel):
    notificationId: int
    type: str
    entity: Optional[str] = None
    entityId: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


class BootstrapPayload(BaseModel):
    unreadCount: int
    notifications: List[NotificationSummary] = Field(default_factory=list)


class AnnouncementPayload(BaseModel):
    notificationId: int
    title: str
    message: str
    created_at: Optional[str] = None


class GoalPendingPayload(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    patient: str
    submitted: Optional[str] = None
    notificationId: Optional[int] = None


class GoalApprovedPayload(BaseModel):
    notificationId: int
    goalId: Optional[int] = None
    title: str
    message: str
    created_at: Optional[str] = None


class LabNewPayload(BaseModel):
    notificationId: int
    labId: Optional[int] = None
    title: str
    testType: str
    resultAt: Optional[str] = None


class MedicationAssignedPayload(BaseModel):
    notificationId: int
    medicationId: Optional[int] = None
    title: str
    message: str
    created_at: Optional[str] = None


class MessagePayload(BaseModel):
    notificationId: int
    title: str
    message: str
    created_at: Optional[str] = None


class PingPayload(BaseModel):
    ts: str


class _OutboundFrame(BaseModel):
    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class BootstrapFrame(_OutboundFrame):
    type: Literal["BOOTSTRAP"] = "BOOTSTRAP"
    payload: BootstrapPayload


class AnnouncementFrame(_OutboundFrame):
    type: Literal["ANNOUNCEMENT"] = "ANNOUNCEMENT"
    payload: AnnouncementPayload


class GoalPendingFrame(_OutboundFrame):
    type: Literal["GOAL_PENDING"] = "GOAL_PENDING"
    payload: GoalPendingPayload


class GoalApprovedFrame(_OutboundFrame):
    type: Literal["GOAL_APPROVED"] = "GOAL_APPROVED"
    payload: GoalApprovedPayload


class LabNewFrame(_OutboundFrame):
    type: Literal["LAB_NEW"] = "LAB_NEW"
    payload: LabNewPayload


class MedicationAssignedFrame(_OutboundFrame):
    type: Literal["MEDICATION_ASSIGNED"] = "MEDICATION_ASSIGNED"
    payload: MedicationAssignedPayload


class MessageFrame(_OutboundFrame):
    type: Literal["MESSAGE"] = "MESSAGE"
    payload: MessagePayload


class PingFrame(_OutboundFrame):
    type: Literal["PING"] = "PING"
    payload: PingPayload = Field(default_factory=lambda: PingPayload(ts=iso_timestamp(utc_now()) or ""))


OutboundFrame = Union[
    BootstrapFrame,
    AnnouncementFrame,
    GoalPendingFrame,
    GoalApprovedFrame,
    LabNewFrame,
    MedicationAssignedFrame,
    MessageFrame,
    PingFrame,
]


def _text(payload: Dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    return str(value)


def summarise_notification(notification: Notification) -> NotificationSummary:
    return NotificationSummary(
        notificationId=notification.id,
        type=notification.type,
        entity=notification.entity,
        entityId=notification.entity_id,
        payload=dict(notification.payload or {}),
        created_at=iso_timestamp(notification.created_at),
    )


def bootstrap_frame(unread_count: int, notifications: List[Notification]) -> BootstrapFrame:
    return BootstrapFrame(
        payload=BootstrapPayload(
            unreadCount=max(0, int(unread_count)),
            notifications=[summarise_notification(item) for item in notifications],
        )
    )


def frame_for_notification(notification: Notification) -> Optional[OutboundFrame]:
    """Derive the live frame for a ledger row, or ``None`` for unknown types."""

    payload = dict(notification.payload or {})
    created_at = iso_timestamp(notification.created_at)
    kind = notification.type

    if kind == NotificationType.ANNOUNCEMENT.value:
        return AnnouncementFrame(
            payload=AnnouncementPayload(
                notificationId=notification.id,
                title=_text(payload, "title"),
                message=_text(payload, "message"),
                created_at=created_at,
            )
        )
    if kind == NotificationType.GOAL_APPROVED.value:
        return GoalApprovedFrame(
            payload=GoalApprovedPayload(
                notificationId=notification.id,
                goalId=payload.get("goalId", notification.entity_id),
                title=_text(payload, "title"),
                message=_text(payload, "message"),
                created_at=created_at,
            )
        )
    if kind == NotificationType.GOAL_PENDING.value:
        return GoalPendingFrame(
            payload=GoalPendingPayload(
                id=payload.get("id", notification.entity_id),
                title=_text(payload, "title"),
                description=payload.get("description"),
                patient=_text(payload, "patient"),
                submitted=payload.get("submitted"),
                notificationId=notification.id,
            )
        )
    if kind == NotificationType.LAB_NEW.value:
        lab_type = _text(payload, "lab_type")
        return LabNewFrame(
            payload=LabNewPayload(
                notificationId=notification.id,
                labId=payload.get("labId", notification.entity_id),
                title=lab_type,
                testType=lab_type,
                resultAt=payload.get("created_at") or created_at,
            )
        )
    if kind == NotificationType.MEDICATION_ASSIGNED.value:
        return MedicationAssignedFrame(
            payload=MedicationAssignedPayload(
                notificationId=notification.id,
                medicationId=payload.get("medicationId", notification.entity_id),
                title=_text(payload, "title"),
                message=_text(payload, "message"),
                created_at=created_at,
            )
        )
    if kind == NotificationType.MESSAGE.value:
        return MessageFrame(
            payload=MessagePayload(
                notificationId=notification.id,
                title=_text(payload, "title"),
                message=_text(payload, "message"),
                created_at=created_at,
            )
        )
    return None


__all__ = [
    "AnnouncementFrame",
    "BootstrapFrame",
    "GoalApprovedFrame",
    "GoalPendingFrame",
    "LabNewFrame",
    "LabReadFrame",
    "MedicationAssignedFrame",
    "MessageFrame",
    "NotificationAckFrame",
    "OutboundFrame",
    "PingFrame",
    "SessionJoinFrame",
    "bootstrap_frame",
    "frame_for_notification",
    "parse_inbound",
]
