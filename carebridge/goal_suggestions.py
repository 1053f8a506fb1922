"""AI-generated goal suggestions for patients.

Suggestions are stored as free text and always require clinician approval
before a patient acts on them.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select

from carebridge.config import Settings, get_settings
from carebridge.db.models import Goal, GoalStatus, GoalSuggestion, Patient
from carebridge.db.session import Database
from carebridge.errors import NotFoundError, UpstreamError
from carebridge.openai_client import call_openai
from carebridge.time_utils import iso_timestamp


logger = structlog.get_logger(__name__)

CompletionFn = Callable[..., str]

SYSTEM_PROMPT = (
    "You help chronic-care patients set structured, meaningful health goals. "
    "Answer only with the requested list."
)


def serialise_suggestion(suggestion: GoalSuggestion) -> Dict[str, object]:
    return {
        "id": suggestion.id,
        "patient_id": suggestion.patient_id,
        "goal_id": suggestion.goal_id,
        "suggestion_text": suggestion.suggestion_text,
        "requires_approval": bool(suggestion.requires_approval),
        "trigger_reason": suggestion.trigger_reason,
        "created_at": iso_timestamp(suggestion.created_at),
    }


def build_prompt(chronic_conditions: Optional[str], goals: Sequence[Goal]) -> str:
    """Describe the patient's conditions and active goals for the model."""

    if goals:
        lines = []
        for index, goal in enumerate(goals, start=1):
            due = goal.due_date.isoformat() if goal.due_date else "no deadline set"
            detail = f": {goal.description}" if goal.description else ""
            lines.append(f"{index}. {goal.title}{detail} (status: {goal.status}, deadline: {due})")
        goal_lines = "\n".join(lines)
    else:
        goal_lines = "No active goals."

    return (
        f"Patient chronic conditions: {chronic_conditions or 'Not recorded'}.\n\n"
        f"Current active goals:\n{goal_lines}\n\n"
        "Return 3-5 NEW suggested goals in the following strict format:\n\n"
        "• Title of the goal\n"
        "  Description of the goal in 1-2 sentences\n\n"
        "RULES:\n"
        "- The first line of each suggestion is the title only.\n"
        "- The second line is the description only.\n"
        "- No blank lines between suggestions.\n"
        "- Keep everything concise and actionable."
    )


class GoalSuggestionService:
    def __init__(
        self,
        database: Database,
        completion: CompletionFn = call_openai,
        settings: Optional[Settings] = None,
    ) -> None:
        self._database = database
        self._completion = completion
        self._settings = settings

    def generate(
        self,
        patient_id: int,
        *,
        goal_id: Optional[int] = None,
        trigger_reason: Optional[str] = None,
    ) -> GoalSuggestion:
        """Ask the model for new goals and store the answer as a suggestion."""

        with self._database.session_scope() as db:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            if goal_id is not None and db.get(Goal, goal_id) is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            active = db.execute(
                select(Goal)
                .where(Goal.patient_id == patient_id, Goal.status == GoalStatus.ACTIVE.value)
                .order_by(Goal.created_at.desc(), Goal.id.desc())
            ).scalars().all()
            prompt = build_prompt(patient.chronic_conditions, active)

        settings = self._settings or get_settings()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            text = self._completion(messages, model=settings.goal_suggestion_model)
        except RuntimeError as exc:
            logger.warning("goal_suggestion_failed", patient_id=patient_id, error=str(exc))
            raise UpstreamError("Goal suggestions are unavailable right now") from exc

        with self._database.session_scope() as db:
            suggestion = GoalSuggestion(
                patient_id=patient_id,
                goal_id=goal_id,
                suggestion_text=text,
                requires_approval=True,
                trigger_reason=trigger_reason,
            )
            db.add(suggestion)
            db.flush()
            db.refresh(suggestion)
        logger.info("goal_suggestion_created", suggestion_id=suggestion.id, patient_id=patient_id)
        return suggestion

    def list_for_patient(self, patient_id: int) -> List[GoalSuggestion]:
        with self._database.session_scope() as db:
            if db.get(Patient, patient_id) is None:
                raise NotFoundError(f"Patient {patient_id} not found")
            rows = db.execute(
                select(GoalSuggestion)
                .where(GoalSuggestion.patient_id == patient_id)
                .order_by(GoalSuggestion.created_at.desc(), GoalSuggestion.id.desc())
            ).scalars()
            return list(rows)


__all__ = ["GoalSuggestionService", "build_prompt", "serialise_suggestion"]
