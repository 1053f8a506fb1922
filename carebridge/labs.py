"""Lab results: creation with a live ``LAB_NEW`` push, listing and viewing."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update

from carebridge.db.models import LabResult, NotificationType, Patient
from carebridge.db.session import Database
from carebridge.errors import InvalidInputError, NotFoundError
from carebridge.notifications_service import NotificationService
from carebridge.time_utils import iso_timestamp, utc_now
from carebridge.ws_notifications import SessionRegistry


logger = structlog.get_logger(__name__)


def serialise_lab(lab: LabResult) -> Dict[str, Any]:
    return {
        "id": lab.id,
        "patient_id": lab.patient_id,
        "lab_type": lab.lab_type,
        "lab_value": float(lab.lab_value) if lab.lab_value is not None else None,
        "unit": lab.unit,
        "source": lab.source,
        "file_url": lab.file_url,
        "created_at": iso_timestamp(lab.created_at),
        "read_at": iso_timestamp(lab.read_at),
    }


def _coerce_value(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInputError("lab_value must be numeric") from exc


class LabService:
    """Store lab results and notify the patient when one arrives."""

    def __init__(
        self,
        database: Database,
        notifications: NotificationService,
        registry: SessionRegistry,
    ) -> None:
        self._database = database
        self._notifications = notifications
        self._registry = registry

    async def create_lab(
        self,
        patient_id: int,
        lab_type: str,
        *,
        lab_value: Any = None,
        unit: Optional[str] = None,
        source: Optional[str] = None,
        file_url: Optional[str] = None,
    ) -> LabResult:
        """Persist a lab result, record ``LAB_NEW`` for the patient and push it."""

        lab_type = (lab_type or "").strip()
        if not patient_id or not lab_type:
            raise InvalidInputError("patientId and lab_type are required")
        value = _coerce_value(lab_value)

        with self._database.session_scope() as db:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            lab = LabResult(
                patient_id=patient.id,
                lab_type=lab_type,
                lab_value=value,
                unit=unit,
                source=source,
                file_url=file_url,
                created_at=utc_now(),
                read_at=None,
            )
            db.add(lab)
            db.flush()
            notification = self._notifications.create(
                patient.user_id,
                NotificationType.LAB_NEW,
                "lab_result",
                lab.id,
                {
                    "labId": lab.id,
                    "lab_type": lab.lab_type,
                    "unit": lab.unit,
                    "file_url": lab.file_url,
                    "created_at": iso_timestamp(lab.created_at),
                },
                session=db,
            )

        logger.info("lab_created", lab_id=lab.id, patient_id=patient_id)
        await self._registry.push_notification(notification)
        return lab

    def list_for_user(self, user_id: int) -> List[LabResult]:
        """Return the labs of the patient owned by *user_id*, newest first."""

        with self._database.session_scope() as db:
            patient = db.execute(select(Patient).where(Patient.user_id == user_id)).scalars().first()
            if patient is None:
                raise NotFoundError(f"No patient profile for user {user_id}")
            rows = db.execute(
                select(LabResult)
                .where(LabResult.patient_id == patient.id)
                .order_by(LabResult.created_at.desc(), LabResult.id.desc())
            ).scalars()
            return list(rows)

    def mark_viewed(self, lab_id: int, *, user_id: Optional[int] = None) -> LabResult:
        """Stamp ``read_at`` once. With *user_id*, only that patient's labs match."""

        with self._database.session_scope() as db:
            lab = db.get(LabResult, lab_id)
            if lab is None:
                raise NotFoundError(f"Lab {lab_id} not found")
            if user_id is not None:
                owner = db.get(Patient, lab.patient_id)
                if owner is None or owner.user_id != user_id:
                    raise NotFoundError(f"Lab {lab_id} not found")
            if lab.read_at is None:
                db.execute(
                    update(LabResult)
                    .where(LabResult.id == lab_id, LabResult.read_at.is_(None))
                    .values(read_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                db.refresh(lab)
            return lab


__all__ = ["LabService", "serialise_lab"]
