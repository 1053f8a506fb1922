"""Goal lifecycle: creation, status transitions and clinician approval.

Approval is the only transition with a side effect. When a goal moves from
``pending_approval`` to ``active`` the patient's user receives a
``GOAL_APPROVED`` ledger entry, committed together with the status change,
and then a live push. Every status write is conditional on the status read
in the same unit of work, so a concurrent writer cannot cause a second
approval notification.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from sqlalchemy import select, update

from carebridge.db.models import Clinician, Goal, GoalStatus, Notification, NotificationType, Patient, User, UserRole
from carebridge.db.session import Database
from carebridge.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from carebridge.metrics import GOAL_TRANSITIONS
from carebridge.notifications_service import NotificationService
from carebridge.time_utils import iso_timestamp, parse_date, utc_now
from carebridge.ws_notifications import SessionRegistry


logger = structlog.get_logger(__name__)

CREATE_STATUSES = frozenset({GoalStatus.ACTIVE.value, GoalStatus.PENDING_APPROVAL.value})
REVIEW_OUTCOMES = frozenset({GoalStatus.ACTIVE.value, GoalStatus.REJECTED.value})
REVIEWER_ROLES = frozenset({UserRole.CLINICIAN.value, UserRole.ADMIN.value})


def serialise_goal(goal: Goal) -> Dict[str, Any]:
    return {
        "id": goal.id,
        "patient_id": goal.patient_id,
        "title": goal.title,
        "description": goal.description,
        "status": goal.status,
        "completed": bool(goal.completed),
        "due_date": goal.due_date.isoformat() if goal.due_date else None,
        "created_at": iso_timestamp(goal.created_at),
        "updated_at": iso_timestamp(goal.updated_at),
    }


def parse_status(value: Union[str, GoalStatus]) -> str:
    """Return the canonical status string, raising for unknown values."""

    if isinstance(value, GoalStatus):
        return value.value
    text = str(value or "").strip().lower()
    try:
        return GoalStatus(text).value
    except ValueError as exc:
        raise InvalidInputError(f"Unknown goal status '{value}'") from exc


def resolve_transition(
    current_status: str,
    status: Optional[str],
    completed: Optional[bool],
) -> Tuple[str, bool]:
    """Return the ``(status, completed)`` pair to persist.

    An explicit status wins and determines ``completed``. ``completed=True``
    alone completes the goal; ``completed=False`` alone reopens a completed
    goal as ``active`` and otherwise keeps the current status.
    """

    if status is None and completed is None:
        raise InvalidInputError("Provide status or completed")
    if status is not None:
        new_status = parse_status(status)
        return new_status, new_status == GoalStatus.COMPLETED.value
    if completed:
        return GoalStatus.COMPLETED.value, True
    if current_status == GoalStatus.COMPLETED.value:
        return GoalStatus.ACTIVE.value, False
    return current_status, False


def is_approval(previous: str, new_status: str) -> bool:
    return previous == GoalStatus.PENDING_APPROVAL.value and new_status == GoalStatus.ACTIVE.value


def is_review(previous: str, new_status: str) -> bool:
    """True when a pending goal is being approved or rejected."""

    return previous == GoalStatus.PENDING_APPROVAL.value and new_status in REVIEW_OUTCOMES


class GoalService:
    def __init__(
        self,
        database: Database,
        notifications: NotificationService,
        registry: SessionRegistry,
    ) -> None:
        self._database = database
        self._notifications = notifications
        self._registry = registry

    def create(
        self,
        patient_id: int,
        title: str,
        *,
        description: Optional[str] = None,
        due_date: Optional[Union[date, str]] = None,
        status: Optional[str] = None,
    ) -> Goal:
        """Create a goal in ``active`` (default) or ``pending_approval``."""

        title = (title or "").strip()
        if not title:
            raise InvalidInputError("title is required")
        resolved_status = parse_status(status) if status else GoalStatus.ACTIVE.value
        if resolved_status not in CREATE_STATUSES:
            raise InvalidInputError("New goals must be active or pending_approval")
        try:
            resolved_due = parse_date(due_date)
        except ValueError as exc:
            raise InvalidInputError("due_date must be an ISO date") from exc

        with self._database.session_scope() as db:
            if db.get(Patient, patient_id) is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            now = utc_now()
            goal = Goal(
                patient_id=patient_id,
                title=title,
                description=description,
                status=resolved_status,
                completed=False,
                due_date=resolved_due,
                created_at=now,
                updated_at=now,
            )
            db.add(goal)
            db.flush()
        logger.info("goal_created", goal_id=goal.id, patient_id=patient_id, status=resolved_status)
        return goal

    def get(self, goal_id: int) -> Goal:
        with self._database.session_scope() as db:
            goal = db.get(Goal, goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            return goal

    def list_for_patient(self, patient_id: int) -> List[Goal]:
        with self._database.session_scope() as db:
            if db.get(Patient, patient_id) is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            rows = db.execute(
                select(Goal)
                .where(Goal.patient_id == patient_id)
                .order_by(Goal.created_at.desc(), Goal.id.desc())
            ).scalars()
            return list(rows)

    async def update_status(
        self,
        goal_id: int,
        *,
        status: Optional[str] = None,
        completed: Optional[bool] = None,
        expected_status: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> Goal:
        """Apply a status/completed change and emit an approval if one occurred.

        ``expected_status`` lets a caller assert the status it last saw; the
        write only happens when the stored status still matches it (or the
        freshly read status when omitted). A mismatch raises
        :class:`ConflictError` and records nothing.

        When ``actor_role`` is given, approving or rejecting a pending goal
        requires a clinician or admin; anyone else gets
        :class:`ForbiddenError`.
        """

        notification: Optional[Notification] = None
        with self._database.session_scope() as db:
            goal = db.get(Goal, goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            previous = parse_status(expected_status) if expected_status else goal.status
            new_status, new_completed = resolve_transition(previous, status, completed)
            if (
                actor_role is not None
                and is_review(previous, new_status)
                and actor_role not in REVIEWER_ROLES
            ):
                logger.info("goal_review_forbidden", goal_id=goal_id, role=actor_role, requested=new_status)
                raise ForbiddenError("Only a clinician can approve or reject a goal")

            result = db.execute(
                update(Goal)
                .where(Goal.id == goal_id, Goal.status == previous)
                .values(status=new_status, completed=new_completed, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info(
                    "goal_status_conflict",
                    goal_id=goal_id,
                    expected=previous,
                    requested=new_status,
                )
                raise ConflictError(f"Goal {goal_id} changed concurrently; reload and retry")
            db.refresh(goal)

            if is_approval(previous, new_status):
                patient = db.get(Patient, goal.patient_id)
                if patient is None:
                    raise NotFoundError(f"Patient {goal.patient_id} not found")
                notification = self._notifications.create(
                    patient.user_id,
                    NotificationType.GOAL_APPROVED,
                    "goal",
                    goal.id,
                    {
                        "goalId": goal.id,
                        "title": goal.title,
                        "message": f'Your goal "{goal.title}" was approved by your clinician.',
                    },
                    session=db,
                )

        if previous != new_status:
            GOAL_TRANSITIONS.labels(from_status=previous, to_status=new_status).inc()
        logger.info(
            "goal_status_updated",
            goal_id=goal_id,
            from_status=previous,
            to_status=new_status,
            completed=new_completed,
            approved=notification is not None,
        )
        if notification is not None:
            await self._registry.push_notification(notification)
        return goal

    def delete(self, goal_id: int) -> None:
        with self._database.session_scope() as db:
            goal = db.get(Goal, goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            db.delete(goal)
        logger.info("goal_deleted", goal_id=goal_id)

    async def notify_pending_goal(self, goal_id: int) -> Notification:
        """Tell the patient's clinician that *goal_id* awaits approval."""

        with self._database.session_scope() as db:
            goal = db.get(Goal, goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            patient = db.get(Patient, goal.patient_id)
            if patient is None or patient.clinician_id is None:
                raise NotFoundError(f"No clinician linked to goal {goal_id}")
            clinician = db.get(Clinician, patient.clinician_id)
            if clinician is None or db.get(User, clinician.user_id) is None:
                raise NotFoundError(f"No clinician user for goal {goal_id}")
            notification = self._notifications.create(
                clinician.user_id,
                NotificationType.GOAL_PENDING,
                "goal",
                goal.id,
                {
                    "id": goal.id,
                    "title": goal.title,
                    "description": goal.description,
                    "patient": patient.full_name,
                    "submitted": iso_timestamp(goal.created_at),
                },
                session=db,
            )

        delivered = await self._registry.push_notification(notification)
        logger.info(
            "goal_pending_notified",
            goal_id=goal_id,
            clinician_user_id=notification.user_id,
            delivered=delivered,
        )
        return notification

    def pending_approvals(self, clinician_id: int) -> List[Dict[str, Any]]:
        """Goals awaiting approval across the clinician's patients, newest first."""

        with self._database.session_scope() as db:
            if db.get(Clinician, clinician_id) is None:
                raise NotFoundError(f"Clinician {clinician_id} not found")
            rows = db.execute(
                select(Goal.id, Goal.title, Goal.created_at, Patient.full_name)
                .join(Patient, Patient.id == Goal.patient_id)
                .where(
                    Patient.clinician_id == clinician_id,
                    Goal.status == GoalStatus.PENDING_APPROVAL.value,
                )
                .order_by(Goal.created_at.desc(), Goal.id.desc())
            ).all()
        return [
            {
                "id": row.id,
                "patient": row.full_name,
                "title": row.title,
                "submitted": iso_timestamp(row.created_at),
            }
            for row in rows
        ]


__all__ = [
    "GoalService",
    "is_approval",
    "is_review",
    "parse_status",
    "resolve_transition",
    "serialise_goal",
]
