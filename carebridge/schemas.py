"""Request and response models for the HTTP API."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


class SignupModel(BaseModel):
    username: str
    email: str
    password: str
    role: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("Invalid email address")
        return value


class LoginModel(BaseModel):
    emailOrUsername: str | None = Field(default=None, alias="emailOrUsername")
    password: str
    username: str | None = None
    email: str | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="after")
    def _require_identifier(self) -> "LoginModel":
        if not (self.emailOrUsername or self.username or self.email):
            raise ValueError("emailOrUsername is required")
        return self

    @property
    def identifier(self) -> str:
        return (self.emailOrUsername or self.username or self.email or "").strip()


class PatientProfileModel(BaseModel):
    user_id: int = Field(alias="userId")
    full_name: str
    gender: Optional[str] = None
    dob: Optional[str] = None
    chronic_conditions: Optional[str] = None
    current_medications: Optional[str] = None
    clinician_invite_code: Optional[str] = Field(default=None, alias="clinicianInviteCode")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ClinicianProfileModel(BaseModel):
    user_id: int = Field(alias="userId")
    full_name: str
    email: Optional[str] = None
    specialty: Optional[str] = None
    license_number: Optional[str] = None
    clinic_name: Optional[str] = None
    contact_phone: Optional[str] = None
    office_address: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CaretakerProfileModel(BaseModel):
    user_id: int = Field(alias="userId")
    full_name: str
    phone: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InviteCodeModel(BaseModel):
    clinician_invite_code: str = Field(alias="clinicianInviteCode")

    model_config = ConfigDict(populate_by_name=True)


class GoalCreateModel(BaseModel):
    title: str
    description: Optional[str] = None
    due_date: Optional[str] = None
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GoalUpdateModel(BaseModel):
    status: Optional[str] = None
    completed: Optional[bool] = None
    expected_status: Optional[str] = Field(default=None, alias="expectedStatus")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PendingGoalModel(BaseModel):
    goal_id: int = Field(alias="goalId")

    model_config = ConfigDict(populate_by_name=True)


class GoalSuggestionRequest(BaseModel):
    goal_id: Optional[int] = Field(default=None, alias="goalId")
    trigger_reason: Optional[str] = Field(default=None, alias="triggerReason")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LabCreateModel(BaseModel):
    patient_id: int = Field(alias="patientId")
    lab_type: str
    lab_value: Optional[Any] = None
    unit: Optional[str] = None
    source: Optional[str] = None
    file_url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MedicationCreateModel(BaseModel):
    medicine_name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    time_of_day: Optional[str] = None
    instructions: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CaretakerLinkModel(BaseModel):
    patient_id: int = Field(alias="patientId")

    model_config = ConfigDict(populate_by_name=True)


class AnnouncementModel(BaseModel):
    title: str
    message: str


__all__ = [
    "AnnouncementModel",
    "CaretakerLinkModel",
    "CaretakerProfileModel",
    "ClinicianProfileModel",
    "ErrorDetail",
    "ErrorResponse",
    "GoalCreateModel",
    "GoalSuggestionRequest",
    "GoalUpdateModel",
    "InviteCodeModel",
    "LabCreateModel",
    "LoginModel",
    "MedicationCreateModel",
    "PatientProfileModel",
    "PendingGoalModel",
    "SignupModel",
]
