"""
CareBridge HTTP API and push endpoint.

Routes are thin: they authenticate the caller, validate the body with the
models in :mod:`carebridge.schemas` and delegate to the services. Domain
errors raised by services are translated into the standard error envelope
``{"success": false, "error": {"code", "message"}}``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List

import jwt
import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from carebridge.announcements import AnnouncementService
from carebridge.auth import (
    authenticate_user,
    create_access_token,
    decode_token,
    delete_user,
    list_users,
    register_user,
    serialise_user,
    token_user_id,
)
from carebridge.care_team import (
    CareTeamService,
    serialise_caretaker,
    serialise_clinician,
    serialise_patient,
)
from carebridge.config import get_settings
from carebridge.db import database
from carebridge.db.models import UserRole
from carebridge.errors import CareBridgeError
from carebridge.goal_suggestions import GoalSuggestionService, serialise_suggestion
from carebridge.goals import GoalService, serialise_goal
from carebridge.labs import LabService, serialise_lab
from carebridge.medications import MedicationService, serialise_medication
from carebridge.notifications_service import NotificationService, serialise_notification
from carebridge.push_gateway import PushGateway
from carebridge.schemas import (
    AnnouncementModel,
    CaretakerLinkModel,
    CaretakerProfileModel,
    ClinicianProfileModel,
    ErrorDetail,
    ErrorResponse,
    GoalCreateModel,
    GoalSuggestionRequest,
    GoalUpdateModel,
    InviteCodeModel,
    LabCreateModel,
    LoginModel,
    MedicationCreateModel,
    PatientProfileModel,
    PendingGoalModel,
    SignupModel,
)
from carebridge.time_utils import iso_timestamp
from carebridge.ws_notifications import SessionRegistry

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

# Service graph. Every service shares the module-level ``database`` so tests
# can re-point it at an in-memory engine before the app starts.
registry = SessionRegistry()
notification_service = NotificationService(database)
lab_service = LabService(database, notification_service, registry)
medication_service = MedicationService(database, notification_service, registry)
announcement_service = AnnouncementService(database, notification_service, registry)
goal_service = GoalService(database, notification_service, registry)
care_team_service = CareTeamService(database)
suggestion_service = GoalSuggestionService(database)
push_gateway = PushGateway(registry, notification_service, lab_service)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup", environment=settings.environment)
    database.create_all()
    try:
        yield
    finally:
        await registry.close_all()
        logger.info("lifespan_shutdown_complete")


app = FastAPI(title="CareBridge API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    try:
        response = await call_next(request)
    finally:
        unbind_contextvars("trace_id", "path", "method")
    response.headers["X-Trace-Id"] = trace_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.allow_all_origins else settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

_HTTP_ERROR_CODES = {
    400: "invalid_input",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(CareBridgeError)
async def carebridge_error_handler(request: Request, exc: CareBridgeError) -> JSONResponse:
    logger.info("request_rejected", code=exc.code, status_code=exc.status_code, message=exc.message)
    return _error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    code = _HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    response = _error_response(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return _error_response(500, "internal_error", "Internal server error")


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Dict[str, Any]:
    """Decode the bearer JWT and return its claims with a numeric ``uid``."""

    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        claims = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user_id = token_user_id(claims)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    claims["uid"] = user_id
    return claims


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role.

    Administrators pass every role check.
    """

    allowed = {UserRole.ADMIN.value, *roles}

    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return user

    return checker


def _is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == UserRole.ADMIN.value


def _require_self_or_admin(user: Dict[str, Any], user_id: int) -> None:
    if user["uid"] != user_id and not _is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")


# ---------------------------------------------------------------------------
# Health and metrics
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "database": database.ping()}


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@app.post("/auth/signup", status_code=status.HTTP_201_CREATED)
def signup(model: SignupModel) -> Dict[str, Any]:
    with database.session_scope() as session:
        user = register_user(session, model.username, model.email, model.password, model.role)
    return {"token": create_access_token(user), "user": serialise_user(user)}


@app.post("/auth/login")
def login(model: LoginModel) -> Dict[str, Any]:
    with database.session_scope() as session:
        user = authenticate_user(session, model.identifier, model.password)
    if user is None:
        logger.info("login_failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return {"token": create_access_token(user), "user": serialise_user(user)}


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


@app.post("/onboarding/patients", status_code=status.HTTP_201_CREATED)
def onboard_patient(
    model: PatientProfileModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    _require_self_or_admin(user, model.user_id)
    patient = care_team_service.create_patient_profile(
        model.user_id,
        model.full_name,
        gender=model.gender,
        dob=model.dob,
        chronic_conditions=model.chronic_conditions,
        current_medications=model.current_medications,
        clinician_invite_code=model.clinician_invite_code,
    )
    return {"message": "Profile created successfully", "profile": serialise_patient(patient)}


@app.post("/onboarding/clinicians", status_code=status.HTTP_201_CREATED)
def onboard_clinician(
    model: ClinicianProfileModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    _require_self_or_admin(user, model.user_id)
    clinician = care_team_service.create_clinician_profile(
        model.user_id,
        model.full_name,
        specialty=model.specialty,
        license_number=model.license_number,
        clinic_name=model.clinic_name,
        contact_email=model.email,
        contact_phone=model.contact_phone,
        office_address=model.office_address,
    )
    return {"message": "Profile created successfully", "profile": serialise_clinician(clinician)}


@app.post("/onboarding/caretakers", status_code=status.HTTP_201_CREATED)
def onboard_caretaker(
    model: CaretakerProfileModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    _require_self_or_admin(user, model.user_id)
    caretaker = care_team_service.create_caretaker_profile(
        model.user_id,
        model.full_name,
        phone=model.phone,
    )
    return {"message": "Profile created successfully", "profile": serialise_caretaker(caretaker)}


@app.put("/onboarding/patients/{patient_id}/clinician")
def link_clinician(
    patient_id: int,
    model: InviteCodeModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    patient = care_team_service.link_patient_to_clinician(patient_id, model.clinician_invite_code)
    return {"profile": serialise_patient(patient)}


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------


@app.post("/patients/goals/{patient_id}", status_code=status.HTTP_201_CREATED)
def create_goal(
    patient_id: int,
    model: GoalCreateModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    goal = goal_service.create(
        patient_id,
        model.title,
        description=model.description,
        due_date=model.due_date,
        status=model.status,
    )
    return {"goal": serialise_goal(goal)}


@app.get("/patients/goals/{patient_id}")
def list_goals(patient_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"goals": [serialise_goal(goal) for goal in goal_service.list_for_patient(patient_id)]}


@app.patch("/patients/goals/{goal_id}")
async def update_goal(
    goal_id: int,
    model: GoalUpdateModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    goal = await goal_service.update_status(
        goal_id,
        status=model.status,
        completed=model.completed,
        expected_status=model.expected_status,
        actor_role=user.get("role"),
    )
    return {"goal": serialise_goal(goal)}


@app.delete("/patients/goals/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(goal_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Response:
    goal_service.delete(goal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/realtime/pending-goal")
async def pending_goal(
    model: PendingGoalModel,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    notification = await goal_service.notify_pending_goal(model.goal_id)
    return {"ok": True, "notificationId": notification.id}


@app.post("/patients/{patient_id}/goal-suggestions", status_code=status.HTTP_201_CREATED)
def create_goal_suggestion(
    patient_id: int,
    model: GoalSuggestionRequest | None = None,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    request = model or GoalSuggestionRequest()
    suggestion = suggestion_service.generate(
        patient_id,
        goal_id=request.goal_id,
        trigger_reason=request.trigger_reason,
    )
    return {"suggestion": serialise_suggestion(suggestion)}


@app.get("/patients/{patient_id}/goal-suggestions")
def list_goal_suggestions(
    patient_id: int,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    suggestions = suggestion_service.list_for_patient(patient_id)
    return {"suggestions": [serialise_suggestion(item) for item in suggestions]}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@app.get("/notifications/{user_id}")
def list_notifications(
    user_id: int,
    user: Dict[str, Any] = Depends(get_current_user),
) -> List[Dict[str, Any]]:
    _require_self_or_admin(user, user_id)
    return [serialise_notification(item) for item in notification_service.list_for_user(user_id)]


@app.patch("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    notification = notification_service.get(notification_id)
    _require_self_or_admin(user, notification.user_id)
    notification = notification_service.mark_read(notification_id)
    return {"ok": True, "id": notification.id, "read_at": iso_timestamp(notification.read_at)}


# ---------------------------------------------------------------------------
# Labs and medications
# ---------------------------------------------------------------------------


@app.post("/labs", status_code=status.HTTP_201_CREATED)
async def create_lab(
    model: LabCreateModel,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CLINICIAN.value)),
) -> Dict[str, Any]:
    lab = await lab_service.create_lab(
        model.patient_id,
        model.lab_type,
        lab_value=model.lab_value,
        unit=model.unit,
        source=model.source,
        file_url=model.file_url,
    )
    return {"labId": lab.id}


@app.get("/patients/{user_id}/labs")
def list_labs(user_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"labs": [serialise_lab(lab) for lab in lab_service.list_for_user(user_id)]}


@app.patch("/patients/labs/{lab_id}/read")
def mark_lab_read(lab_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    owner = user["uid"] if user.get("role") == UserRole.PATIENT.value else None
    lab = lab_service.mark_viewed(lab_id, user_id=owner)
    return {"lab": serialise_lab(lab)}


@app.post("/patients/{patient_id}/medications", status_code=status.HTTP_201_CREATED)
async def assign_medication(
    patient_id: int,
    model: MedicationCreateModel,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CLINICIAN.value)),
) -> Dict[str, Any]:
    medication = await medication_service.assign(
        patient_id,
        model.medicine_name,
        dosage=model.dosage,
        frequency=model.frequency,
        preferred_time=model.time_of_day,
        instructions=model.instructions,
    )
    return {"medication": serialise_medication(medication)}


@app.get("/patients/{user_id}/medications")
def list_medications_for_user(
    user_id: int,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    return {"meds": [serialise_medication(m) for m in medication_service.list_for_user(user_id)]}


@app.get("/patients/by-patient/{patient_id}/medications")
def list_medications_for_patient(
    patient_id: int,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    return {"meds": [serialise_medication(m) for m in medication_service.list_for_patient(patient_id)]}


@app.delete("/patients/medications/{med_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_medication(med_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Response:
    medication_service.delete(med_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Clinicians and caretakers
# ---------------------------------------------------------------------------


@app.get("/clinicians/by-user/{user_id}")
def clinician_by_user(user_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"clinician": serialise_clinician(care_team_service.get_clinician_by_user(user_id))}


@app.get("/clinicians/{clinician_id}")
def clinician_profile(clinician_id: int, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"clinician": serialise_clinician(care_team_service.get_clinician(clinician_id))}


@app.get("/clinicians/{clinician_id}/patients")
def clinician_patients(
    clinician_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CLINICIAN.value)),
) -> Dict[str, Any]:
    return {"patients": care_team_service.clinician_patients(clinician_id)}


@app.get("/clinicians/{clinician_id}/approvals")
def clinician_approvals(
    clinician_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CLINICIAN.value)),
) -> Dict[str, Any]:
    return {"approvals": goal_service.pending_approvals(clinician_id)}


@app.post("/clinicians/{clinician_id}/invite/regenerate")
def regenerate_invite(
    clinician_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CLINICIAN.value)),
) -> Dict[str, Any]:
    code = care_team_service.regenerate_invite_code(clinician_id)
    return {"message": "Invite code regenerated", "inviteCode": code}


def _caretaker_owner(user: Dict[str, Any]) -> int | None:
    """User id a caretaker profile must belong to; ``None`` for admins."""

    return None if _is_admin(user) else user["uid"]


@app.get("/caretakers/patients/{patient_id}")
def caretaker_patient_detail(
    patient_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CARETAKER.value)),
) -> Dict[str, Any]:
    return {"patient": care_team_service.caretaker_patient_snapshot(user["uid"], patient_id)}


@app.post("/caretakers/{caretaker_id}/patients", status_code=status.HTTP_201_CREATED)
def link_caretaker_patient(
    caretaker_id: int,
    model: CaretakerLinkModel,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CARETAKER.value)),
) -> Dict[str, Any]:
    link = care_team_service.link_caretaker(
        caretaker_id,
        model.patient_id,
        caretaker_user_id=_caretaker_owner(user),
    )
    return {
        "link": {
            "caretaker_id": link.caretaker_id,
            "patient_id": link.patient_id,
            "created_at": iso_timestamp(link.created_at),
        }
    }


@app.get("/caretakers/{caretaker_id}/patients")
def caretaker_patients(
    caretaker_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.CARETAKER.value)),
) -> Dict[str, Any]:
    patients = care_team_service.caretaker_patients(caretaker_id, caretaker_user_id=_caretaker_owner(user))
    return {"patients": [serialise_patient(p) for p in patients]}


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@app.post("/admin/announcements", status_code=status.HTTP_201_CREATED)
async def create_announcement(
    model: AnnouncementModel,
    user: Dict[str, Any] = Depends(require_roles(UserRole.ADMIN.value)),
) -> Dict[str, Any]:
    created = await announcement_service.broadcast(model.title, model.message)
    return {"created": created}


@app.get("/admin/users")
def admin_list_users(user: Dict[str, Any] = Depends(require_roles(UserRole.ADMIN.value))) -> Dict[str, Any]:
    with database.session_scope() as session:
        users = list_users(session)
    return {"users": [serialise_user(item) for item in users]}


@app.delete("/admin/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def admin_delete_user(
    user_id: int,
    user: Dict[str, Any] = Depends(require_roles(UserRole.ADMIN.value)),
) -> Response:
    with database.session_scope() as session:
        delete_user(session, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------


@app.websocket("/ws")
async def push_socket(websocket: WebSocket) -> None:
    await push_gateway.handle(websocket)


if __name__ == "__main__":  # pragma: no cover
    uvicorn.run("carebridge.main:app", host=settings.host, port=settings.port)
