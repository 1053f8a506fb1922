"""SQLAlchemy models for the care-coordination schema."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    """Roles a user account can hold."""

    PATIENT = "patient"
    CLINICIAN = "clinician"
    CARETAKER = "caretaker"
    ADMIN = "admin"


class GoalStatus(str, enum.Enum):
    """Lifecycle states of a care goal."""

    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"
    PAUSED = "paused"


class NotificationType(str, enum.Enum):
    """Known notification types. The column itself accepts any string."""

    MESSAGE = "MESSAGE"
    ANNOUNCEMENT = "ANNOUNCEMENT"
    GOAL_APPROVED = "GOAL_APPROVED"
    GOAL_PENDING = "GOAL_PENDING"
    LAB_NEW = "LAB_NEW"
    MEDICATION_ASSIGNED = "MEDICATION_ASSIGNED"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    email = sa.Column(String, nullable=False, unique=True, index=True)
    password_hash = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False, server_default=sa.text("'patient'"))
    profile_completed = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class Clinician(Base):
    __tablename__ = "clinicians"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    full_name = sa.Column(String, nullable=False)
    specialty = sa.Column(String, nullable=True)
    license_number = sa.Column(String, nullable=True)
    clinic_name = sa.Column(String, nullable=True)
    contact_email = sa.Column(String, nullable=True)
    contact_phone = sa.Column(String, nullable=True)
    office_address = sa.Column(Text, nullable=True)
    invite_code = sa.Column(String(8), nullable=True, unique=True, index=True)
    invite_updated_at = sa.Column(DateTime(timezone=True), nullable=True)


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    clinician_id = sa.Column(Integer, ForeignKey("clinicians.id"), nullable=True)
    full_name = sa.Column(String, nullable=False)
    gender = sa.Column(String, nullable=True)
    dob = sa.Column(Date, nullable=True)
    chronic_conditions = sa.Column(Text, nullable=True)
    current_medications = sa.Column(Text, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (sa.Index("idx_patients_clinician", "clinician_id"),)


class Caretaker(Base):
    __tablename__ = "caretakers"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    full_name = sa.Column(String, nullable=False)
    phone = sa.Column(String, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class PatientCaretaker(Base):
    __tablename__ = "patient_caretakers"

    patient_id = sa.Column(Integer, ForeignKey("patients.id"), primary_key=True)
    caretaker_id = sa.Column(Integer, ForeignKey("caretakers.id"), primary_key=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class Goal(Base):
    __tablename__ = "goals"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    title = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=False, server_default=sa.text("'active'"))
    completed = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    due_date = sa.Column(Date, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        sa.Index("idx_goals_patient", "patient_id", "created_at"),
        sa.Index("idx_goals_status", "status"),
    )


class GoalSuggestion(Base):
    __tablename__ = "goal_suggestions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    goal_id = sa.Column(Integer, ForeignKey("goals.id", ondelete="SET NULL"), nullable=True)
    suggestion_text = sa.Column(Text, nullable=False)
    requires_approval = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    trigger_reason = sa.Column(String, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    type = sa.Column(String, nullable=False)
    entity = sa.Column(String, nullable=True)
    entity_id = sa.Column(Integer, nullable=True)
    payload = sa.Column(sa.JSON, nullable=False, default=dict)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    read_at = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.Index("idx_notifications_user", "user_id", "created_at"),
        sa.Index("idx_notifications_unread", "user_id", "read_at"),
    )


class LabResult(Base):
    __tablename__ = "lab_results"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    lab_type = sa.Column(String, nullable=False)
    lab_value = sa.Column(Numeric(12, 4), nullable=True)
    unit = sa.Column(String, nullable=True)
    source = sa.Column(String, nullable=True)
    file_url = sa.Column(String, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    read_at = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("idx_lab_results_patient", "patient_id", "created_at"),)


class Medication(Base):
    __tablename__ = "medications"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    medicine_name = sa.Column(String, nullable=False)
    dosage = sa.Column(String, nullable=True)
    frequency = sa.Column(String, nullable=True)
    preferred_time = sa.Column(String, nullable=True)
    instructions = sa.Column(Text, nullable=True)
    taken = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (sa.Index("idx_medications_patient", "patient_id"),)


__all__ = [
    "Base",
    "Caretaker",
    "Clinician",
    "Goal",
    "GoalStatus",
    "GoalSuggestion",
    "LabResult",
    "Medication",
    "Notification",
    "NotificationType",
    "Patient",
    "PatientCaretaker",
    "User",
    "UserRole",
]
