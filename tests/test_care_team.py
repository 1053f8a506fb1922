import pytest

from carebridge.care_team import CareTeamService, serialise_clinician
from carebridge.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError, UpstreamError
from carebridge.goal_suggestions import GoalSuggestionService, build_prompt
from carebridge.goals import GoalService
from carebridge.invite_codes import INVITE_ALPHABET, generate_invite_code, normalise_invite_code


@pytest.fixture
def team_service(database):
    return CareTeamService(database)


def test_invite_codes_use_unambiguous_alphabet():
    code = generate_invite_code()
    assert len(code) == 8
    assert not set(code) & set("O0I1")
    assert set(code) <= set(INVITE_ALPHABET)
    assert normalise_invite_code("  ab12cd ") == "AB12CD"


def test_clinician_profile_gets_invite_code(team_service, make_user):
    user = make_user("doc", "clinician")
    clinician = team_service.create_clinician_profile(user.id, "Dr. Who")

    data = serialise_clinician(clinician)
    assert len(data["inviteCode"]) == 8
    assert data["contact_email"] == "doc@example.test"
    assert data["inviteUpdatedAt"].endswith("Z")

    with pytest.raises(ConflictError):
        team_service.create_clinician_profile(user.id, "Dr. Who")


def test_regenerate_invite_code_changes_it(team_service, care_team):
    old = care_team.clinician.invite_code
    new = team_service.regenerate_invite_code(care_team.clinician.id)

    assert new != old
    assert team_service.get_clinician(care_team.clinician.id).invite_code == new
    with pytest.raises(NotFoundError):
        team_service.regenerate_invite_code(999)


def test_link_patient_to_clinician(team_service, make_user, care_team):
    user = make_user("later")
    patient = team_service.create_patient_profile(user.id, "Late Joiner")
    assert patient.clinician_id is None

    linked = team_service.link_patient_to_clinician(patient.id, care_team.clinician.invite_code)
    assert linked.clinician_id == care_team.clinician.id

    with pytest.raises(InvalidInputError):
        team_service.link_patient_to_clinician(patient.id, "")
    with pytest.raises(InvalidInputError):
        team_service.link_patient_to_clinician(patient.id, "NOPE1234")


def test_patient_profile_validation(team_service, make_user, database):
    user = make_user("someone")
    with pytest.raises(InvalidInputError):
        team_service.create_patient_profile(user.id, "   ")
    with pytest.raises(InvalidInputError):
        team_service.create_patient_profile(user.id, "Some One", dob="yesterday")
    with pytest.raises(NotFoundError):
        team_service.create_patient_profile(404, "Ghost")


def test_caretaker_links_are_unique(team_service, make_user, care_team):
    user = make_user("carer", "caretaker")
    caretaker = team_service.create_caretaker_profile(user.id, "Carer")

    team_service.link_caretaker(caretaker.id, care_team.patient.id)
    with pytest.raises(ConflictError):
        team_service.link_caretaker(caretaker.id, care_team.patient.id)
    with pytest.raises(NotFoundError):
        team_service.link_caretaker(caretaker.id, 999)

    assert [p.id for p in team_service.caretaker_patients(caretaker.id)] == [care_team.patient.id]


def test_clinician_patients_without_goals(team_service, care_team):
    summary = team_service.clinician_patients(care_team.clinician.id)
    assert summary[0]["goals_completed_pct"] == 0
    with pytest.raises(NotFoundError):
        team_service.clinician_patients(999)


def test_build_prompt_lists_conditions_and_goals(database, notifications, registry, care_team):
    goals = GoalService(database, notifications, registry)
    goal = goals.create(care_team.patient.id, "Walk 10k steps", description="Every day")

    prompt = build_prompt("Type 2 diabetes", [goal])

    assert "Type 2 diabetes" in prompt
    assert "Walk 10k steps" in prompt


def test_suggestions_store_model_output(database, care_team):
    seen = {}

    def completion(messages, model="gpt-4.1-mini", temperature=0.2):
        seen["messages"] = messages
        seen["model"] = model
        return "• Drink water\n  Eight glasses a day."

    service = GoalSuggestionService(database, completion=completion)
    suggestion = service.generate(care_team.patient.id, trigger_reason="checkup")

    assert suggestion.suggestion_text.startswith("• Drink water")
    assert suggestion.requires_approval is True
    assert "Type 2 diabetes" in seen["messages"][-1]["content"]
    assert [item.id for item in service.list_for_patient(care_team.patient.id)] == [suggestion.id]


def test_suggestion_failure_becomes_upstream_error(database, care_team):
    def completion(messages, model="gpt-4.1-mini", temperature=0.2):
        raise RuntimeError("OpenAI key not configured.")

    service = GoalSuggestionService(database, completion=completion)
    with pytest.raises(UpstreamError):
        service.generate(care_team.patient.id)
    assert service.list_for_patient(care_team.patient.id) == []

    with pytest.raises(NotFoundError):
        service.generate(999)


def test_caretaker_snapshot_needs_a_link(team_service, make_user, database, notifications, registry, care_team):
    carer = make_user("carer", "caretaker")
    caretaker = team_service.create_caretaker_profile(carer.id, "Carer")
    goals = GoalService(database, notifications, registry)
    older = goals.create(care_team.patient.id, "Walk daily")
    newer = goals.create(care_team.patient.id, "Sleep 8h")

    with pytest.raises(ForbiddenError):
        team_service.caretaker_patient_snapshot(carer.id, care_team.patient.id)
    with pytest.raises(ForbiddenError):
        team_service.caretaker_patient_snapshot(care_team.clinician_user.id, care_team.patient.id)

    team_service.link_caretaker(caretaker.id, care_team.patient.id)
    snapshot = team_service.caretaker_patient_snapshot(carer.id, care_team.patient.id)

    assert snapshot["full_name"] == "Pat Doe"
    assert [goal["id"] for goal in snapshot["goals"]] == [newer.id, older.id]
    assert snapshot["labs"] == []
    with pytest.raises(NotFoundError):
        team_service.caretaker_patient_snapshot(carer.id, 999)


def test_caretaker_profile_ownership(team_service, make_user, care_team):
    owner = make_user("owner", "caretaker")
    other = make_user("other", "caretaker")
    caretaker = team_service.create_caretaker_profile(owner.id, "Owner")

    with pytest.raises(ForbiddenError):
        team_service.link_caretaker(caretaker.id, care_team.patient.id, caretaker_user_id=other.id)
    team_service.link_caretaker(caretaker.id, care_team.patient.id, caretaker_user_id=owner.id)

    with pytest.raises(ForbiddenError):
        team_service.caretaker_patients(caretaker.id, caretaker_user_id=other.id)
    assert [p.id for p in team_service.caretaker_patients(caretaker.id, caretaker_user_id=owner.id)] == [
        care_team.patient.id
    ]
