"""Patient, clinician and caretaker profiles and the links between them."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from carebridge.db.models import (
    Caretaker,
    Clinician,
    Goal,
    GoalStatus,
    LabResult,
    Patient,
    PatientCaretaker,
    User,
)
from carebridge.db.session import Database
from carebridge.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from carebridge.invite_codes import normalise_invite_code, unique_invite_code
from carebridge.time_utils import iso_timestamp, parse_date, utc_now


logger = structlog.get_logger(__name__)


def serialise_patient(patient: Patient) -> Dict[str, Any]:
    return {
        "id": patient.id,
        "user_id": patient.user_id,
        "clinician_id": patient.clinician_id,
        "full_name": patient.full_name,
        "gender": patient.gender,
        "dob": patient.dob.isoformat() if patient.dob else None,
        "chronic_conditions": patient.chronic_conditions,
        "current_medications": patient.current_medications,
        "created_at": iso_timestamp(patient.created_at),
    }


def serialise_clinician(clinician: Clinician) -> Dict[str, Any]:
    return {
        "id": clinician.id,
        "user_id": clinician.user_id,
        "full_name": clinician.full_name,
        "specialty": clinician.specialty,
        "license_number": clinician.license_number,
        "clinic_name": clinician.clinic_name,
        "contact_email": clinician.contact_email,
        "contact_phone": clinician.contact_phone,
        "office_address": clinician.office_address,
        "inviteCode": clinician.invite_code,
        "inviteUpdatedAt": iso_timestamp(clinician.invite_updated_at),
    }


def serialise_caretaker(caretaker: Caretaker) -> Dict[str, Any]:
    return {
        "id": caretaker.id,
        "user_id": caretaker.user_id,
        "full_name": caretaker.full_name,
        "phone": caretaker.phone,
        "created_at": iso_timestamp(caretaker.created_at),
    }


def _empty_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class CareTeamService:
    """Profile creation plus clinician and caretaker relationships."""

    def __init__(self, database: Database) -> None:
        self._database = database

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------
    def create_patient_profile(
        self,
        user_id: int,
        full_name: str,
        *,
        gender: Optional[str] = None,
        dob: Any = None,
        chronic_conditions: Optional[str] = None,
        current_medications: Optional[str] = None,
        clinician_invite_code: Optional[str] = None,
    ) -> Patient:
        full_name = (full_name or "").strip()
        if not full_name:
            raise InvalidInputError("full_name is required")
        try:
            resolved_dob = parse_date(dob)
        except ValueError as exc:
            raise InvalidInputError("dob must be an ISO date") from exc

        with self._database.session_scope() as db:
            user = self._require_user(db, user_id)
            if db.execute(select(Patient.id).where(Patient.user_id == user_id)).first():
                raise ConflictError("Profile already exists, kindly login")
            clinician_id = None
            code = normalise_invite_code(clinician_invite_code)
            if code:
                clinician = self._clinician_for_code(db, code)
                clinician_id = clinician.id
            patient = Patient(
                user_id=user_id,
                clinician_id=clinician_id,
                full_name=full_name,
                gender=_empty_to_none(gender),
                dob=resolved_dob,
                chronic_conditions=_empty_to_none(chronic_conditions),
                current_medications=_empty_to_none(current_medications),
                created_at=utc_now(),
            )
            db.add(patient)
            user.profile_completed = True
            db.flush()
        logger.info("patient_profile_created", patient_id=patient.id, user_id=user_id)
        return patient

    def create_clinician_profile(
        self,
        user_id: int,
        full_name: str,
        *,
        specialty: Optional[str] = None,
        license_number: Optional[str] = None,
        clinic_name: Optional[str] = None,
        contact_email: Optional[str] = None,
        contact_phone: Optional[str] = None,
        office_address: Optional[str] = None,
    ) -> Clinician:
        full_name = (full_name or "").strip()
        if not full_name:
            raise InvalidInputError("full_name is required")

        with self._database.session_scope() as db:
            user = self._require_user(db, user_id)
            if db.execute(select(Clinician.id).where(Clinician.user_id == user_id)).first():
                raise ConflictError("Profile already exists, kindly login")
            clinician = Clinician(
                user_id=user_id,
                full_name=full_name,
                specialty=_empty_to_none(specialty),
                license_number=_empty_to_none(license_number),
                clinic_name=_empty_to_none(clinic_name),
                contact_email=_empty_to_none(contact_email) or user.email,
                contact_phone=_empty_to_none(contact_phone),
                office_address=_empty_to_none(office_address),
                invite_code=unique_invite_code(db),
                invite_updated_at=utc_now(),
            )
            db.add(clinician)
            user.profile_completed = True
            db.flush()
        logger.info("clinician_profile_created", clinician_id=clinician.id, user_id=user_id)
        return clinician

    def create_caretaker_profile(
        self,
        user_id: int,
        full_name: str,
        *,
        phone: Optional[str] = None,
    ) -> Caretaker:
        full_name = (full_name or "").strip()
        if not full_name:
            raise InvalidInputError("Full name is required")

        with self._database.session_scope() as db:
            user = self._require_user(db, user_id)
            if db.execute(select(Caretaker.id).where(Caretaker.user_id == user_id)).first():
                raise ConflictError("Profile already exists, kindly login")
            caretaker = Caretaker(
                user_id=user_id,
                full_name=full_name,
                phone=_empty_to_none(phone),
                created_at=utc_now(),
            )
            db.add(caretaker)
            user.profile_completed = True
            db.flush()
        logger.info("caretaker_profile_created", caretaker_id=caretaker.id, user_id=user_id)
        return caretaker

    def link_patient_to_clinician(self, patient_id: int, invite_code: str) -> Patient:
        code = normalise_invite_code(invite_code)
        if not code:
            raise InvalidInputError("Clinician invite code is required")
        with self._database.session_scope() as db:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            clinician = self._clinician_for_code(db, code)
            patient.clinician_id = clinician.id
            db.flush()
        logger.info("patient_linked_to_clinician", patient_id=patient_id, clinician_id=patient.clinician_id)
        return patient

    # ------------------------------------------------------------------
    # Clinicians
    # ------------------------------------------------------------------
    def get_clinician(self, clinician_id: int) -> Clinician:
        with self._database.session_scope() as db:
            clinician = db.get(Clinician, clinician_id)
            if clinician is None:
                raise NotFoundError("Clinician not found")
            return clinician

    def get_clinician_by_user(self, user_id: int) -> Clinician:
        with self._database.session_scope() as db:
            clinician = db.execute(
                select(Clinician).where(Clinician.user_id == user_id)
            ).scalars().first()
            if clinician is None:
                raise NotFoundError("Clinician not found")
            return clinician

    def clinician_patients(self, clinician_id: int) -> List[Dict[str, Any]]:
        """Patients of *clinician_id* with the share of their goals completed."""

        with self._database.session_scope() as db:
            if db.get(Clinician, clinician_id) is None:
                raise NotFoundError("Clinician not found")
            patients = db.execute(
                select(Patient).where(Patient.clinician_id == clinician_id).order_by(Patient.id)
            ).scalars().all()
            summaries: List[Dict[str, Any]] = []
            for patient in patients:
                goals = db.execute(
                    select(Goal.status, Goal.completed).where(Goal.patient_id == patient.id)
                ).all()
                total = len(goals)
                done = sum(
                    1
                    for goal in goals
                    if goal.completed or goal.status == GoalStatus.COMPLETED.value
                )
                summaries.append(
                    {
                        "id": patient.id,
                        "name": patient.full_name,
                        "created_at": iso_timestamp(patient.created_at),
                        "goals_completed_pct": round(done * 100 / total) if total else 0,
                    }
                )
        return summaries

    def regenerate_invite_code(self, clinician_id: int) -> str:
        with self._database.session_scope() as db:
            clinician = db.get(Clinician, clinician_id)
            if clinician is None:
                raise NotFoundError("Clinician not found")
            clinician.invite_code = unique_invite_code(db)
            clinician.invite_updated_at = utc_now()
            code = clinician.invite_code
        logger.info("invite_code_regenerated", clinician_id=clinician_id)
        return code

    # ------------------------------------------------------------------
    # Caretakers
    # ------------------------------------------------------------------
    def link_caretaker(
        self,
        caretaker_id: int,
        patient_id: int,
        *,
        caretaker_user_id: Optional[int] = None,
    ) -> PatientCaretaker:
        """Link a caretaker to a patient. A duplicate link is a conflict.

        When ``caretaker_user_id`` is given the caretaker profile must belong
        to that user.
        """

        with self._database.session_scope() as db:
            self._require_caretaker(db, caretaker_id, caretaker_user_id)
            if db.get(Patient, patient_id) is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            if db.get(PatientCaretaker, (patient_id, caretaker_id)) is not None:
                raise ConflictError("Patient already linked to this caretaker")
            link = PatientCaretaker(
                patient_id=patient_id,
                caretaker_id=caretaker_id,
                created_at=utc_now(),
            )
            db.add(link)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError("Patient already linked to this caretaker") from exc
        logger.info("caretaker_linked", caretaker_id=caretaker_id, patient_id=patient_id)
        return link

    def caretaker_patients(
        self,
        caretaker_id: int,
        *,
        caretaker_user_id: Optional[int] = None,
    ) -> List[Patient]:
        with self._database.session_scope() as db:
            self._require_caretaker(db, caretaker_id, caretaker_user_id)
            rows = db.execute(
                select(Patient)
                .join(PatientCaretaker, PatientCaretaker.patient_id == Patient.id)
                .where(PatientCaretaker.caretaker_id == caretaker_id)
                .order_by(Patient.id)
            ).scalars()
            return list(rows)

    def caretaker_patient_snapshot(self, caretaker_user_id: int, patient_id: int) -> Dict[str, Any]:
        """Profile, goals and labs of a patient the caretaker is linked to.

        Goals and labs are newest first. A caller without a caretaker profile
        or without a link to the patient gets :class:`ForbiddenError`.
        """

        with self._database.session_scope() as db:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            caretaker = db.execute(
                select(Caretaker).where(Caretaker.user_id == caretaker_user_id)
            ).scalars().first()
            if caretaker is None:
                raise ForbiddenError("Caretaker profile not found")
            if db.get(PatientCaretaker, (patient_id, caretaker.id)) is None:
                logger.info("caretaker_patient_denied", caretaker_id=caretaker.id, patient_id=patient_id)
                raise ForbiddenError("Not linked to this patient")

            goals = db.execute(
                select(Goal)
                .where(Goal.patient_id == patient_id)
                .order_by(Goal.created_at.desc(), Goal.id.desc())
            ).scalars().all()
            labs = db.execute(
                select(LabResult)
                .where(LabResult.patient_id == patient_id)
                .order_by(LabResult.created_at.desc(), LabResult.id.desc())
            ).scalars().all()

            return {
                "id": patient.id,
                "full_name": patient.full_name,
                "gender": patient.gender,
                "dob": patient.dob.isoformat() if patient.dob else None,
                "chronic_conditions": patient.chronic_conditions,
                "current_medications": patient.current_medications,
                "goals": [
                    {
                        "id": goal.id,
                        "title": goal.title,
                        "description": goal.description,
                        "status": goal.status,
                        "completed": bool(goal.completed),
                        "due_date": goal.due_date.isoformat() if goal.due_date else None,
                    }
                    for goal in goals
                ],
                "labs": [
                    {
                        "id": lab.id,
                        "lab_type": lab.lab_type,
                        "lab_value": float(lab.lab_value) if lab.lab_value is not None else None,
                        "unit": lab.unit,
                        "created_at": iso_timestamp(lab.created_at),
                    }
                    for lab in labs
                ],
            }

            return list(rows)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _require_user(db, user_id: int) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _require_caretaker(db, caretaker_id: int, owner_user_id: Optional[int]) -> Caretaker:
        caretaker = db.get(Caretaker, caretaker_id)
        if caretaker is None:
            raise NotFoundError(f"Caretaker {caretaker_id} not found")
        if owner_user_id is not None and caretaker.user_id != owner_user_id:
            raise ForbiddenError("Caretaker profile belongs to another user")
        return caretaker

    @staticmethod
    def _clinician_for_code(db, code: str) -> Clinician:
        clinician = db.execute(
            select(Clinician).where(Clinician.invite_code == code)
        ).scalars().first()
        if clinician is None:
            raise InvalidInputError("Invalid clinician invite code")
        return clinician


__all__ = [
    "CareTeamService",
    "serialise_caretaker",
    "serialise_clinician",
    "serialise_patient",
]
