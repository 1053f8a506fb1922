"""Medication assignment and listing."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from carebridge.db.models import Medication, NotificationType, Patient
from carebridge.db.session import Database
from carebridge.errors import InvalidInputError, NotFoundError
from carebridge.notifications_service import NotificationService
from carebridge.time_utils import iso_timestamp, utc_now
from carebridge.ws_notifications import SessionRegistry


logger = structlog.get_logger(__name__)


def serialise_medication(medication: Medication) -> Dict[str, Any]:
    return {
        "id": medication.id,
        "patient_id": medication.patient_id,
        "medicine_name": medication.medicine_name,
        "dosage": medication.dosage,
        "frequency": medication.frequency,
        "preferred_time": medication.preferred_time,
        "instructions": medication.instructions,
        "taken": bool(medication.taken),
        "created_at": iso_timestamp(medication.created_at),
    }


class MedicationService:
    def __init__(
        self,
        database: Database,
        notifications: NotificationService,
        registry: SessionRegistry,
    ) -> None:
        self._database = database
        self._notifications = notifications
        self._registry = registry

    async def assign(
        self,
        patient_id: int,
        medicine_name: str,
        *,
        dosage: Optional[str] = None,
        frequency: Optional[str] = None,
        preferred_time: Optional[str] = None,
        instructions: Optional[str] = None,
    ) -> Medication:
        """Add a medication to the patient's list and notify the patient."""

        medicine_name = (medicine_name or "").strip()
        if not medicine_name:
            raise InvalidInputError("medicine_name is required")

        with self._database.session_scope() as db:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            medication = Medication(
                patient_id=patient.id,
                medicine_name=medicine_name,
                dosage=dosage,
                frequency=frequency,
                preferred_time=preferred_time,
                instructions=instructions,
                taken=False,
                created_at=utc_now(),
            )
            db.add(medication)
            db.flush()
            notification = self._notifications.create(
                patient.user_id,
                NotificationType.MEDICATION_ASSIGNED,
                "medication",
                medication.id,
                {
                    "medicationId": medication.id,
                    "title": "New Medication Assigned",
                    "message": f"{medicine_name} was added to your medication list.",
                },
                session=db,
            )

        logger.info("medication_assigned", medication_id=medication.id, patient_id=patient_id)
        await self._registry.push_notification(notification)
        return medication

    def list_for_patient(self, patient_id: int) -> List[Medication]:
        with self._database.session_scope() as db:
            rows = db.execute(
                select(Medication)
                .where(Medication.patient_id == patient_id)
                .order_by(Medication.id.desc())
            ).scalars()
            return list(rows)

    def list_for_user(self, user_id: int) -> List[Medication]:
        with self._database.session_scope() as db:
            patient = db.execute(select(Patient).where(Patient.user_id == user_id)).scalars().first()
            if patient is None:
                raise NotFoundError(f"No patient profile for user {user_id}")
        return self.list_for_patient(patient.id)

    def delete(self, medication_id: int) -> None:
        with self._database.session_scope() as db:
            medication = db.get(Medication, medication_id)
            if medication is None:
                raise NotFoundError(f"Medication {medication_id} not found")
            db.delete(medication)
        logger.info("medication_deleted", medication_id=medication_id)


__all__ = ["MedicationService", "serialise_medication"]
