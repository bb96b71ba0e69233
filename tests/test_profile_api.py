import pytest

from conftest import STUDENT
from leedsbot import repository
from leedsbot.models import UserProfile

VALID = {
    "studentId": "c12345678",
    "degree": "MASTERS",
    "degreeName": "MSc Data Science",
    "goals": "Pass the databases exam",
    "levels": {"MATHS": "INTERMEDIATE", "MIDGE": "BEGINNER", "DATABASE_SYSTEMS": "ADVANCED"},
}


def test_empty_profile_defaults(api):
    r = api.get("/profile")
    assert r.status_code == 200
    assert r.json() == {
        "completed": False,
        "profile": {
            "studentId": "",
            "degree": "BACHELORS",
            "degreeName": "",
            "goals": "",
            "levels": {"MATHS": "BEGINNER", "MIDGE": "BEGINNER", "DATABASE_SYSTEMS": "BEGINNER"},
        },
    }


def test_save_then_read_profile(api, db_session):
    r = api.post("/profile", json=VALID)
    assert r.status_code == 200
    assert r.json() == {"ok": True}

    body = api.get("/profile").json()
    assert body["completed"] is True
    assert body["profile"] == VALID
    assert repository.is_onboarded(db_session, STUDENT)


def test_resave_updates_levels_in_place(api, db_session):
    api.post("/profile", json=VALID)
    api.post("/profile", json={**VALID, "levels": {**VALID["levels"], "MATHS": "ADVANCED"}})
    assert repository.subject_levels(db_session, STUDENT)["MATHS"] == "ADVANCED"
    assert len(repository.subject_levels(db_session, STUDENT)) == 3


def test_omitted_goals_keep_intake_summary(api, db_session):
    repository.upsert_profile(db_session, STUDENT, goals="Goal: exam | Topics: joins | Weakness: keys")
    payload = {k: v for k, v in VALID.items() if k != "goals"}
    assert api.post("/profile", json=payload).status_code == 200
    db_session.expire_all()
    assert db_session.get(UserProfile, STUDENT).goals == "Goal: exam | Topics: joins | Weakness: keys"


@pytest.mark.parametrize(
    "patch, message",
    [
        ({"studentId": "12345678"}, "Student ID must be c########"),
        ({"studentId": "c1234"}, "Student ID must be c########"),
        ({"studentId": "c12345678\n"}, "Student ID must be c########"),
        ({"studentId": " c12345678"}, "Student ID must be c########"),
        ({"degreeName": " "}, "Select your programme"),
        ({"degreeName": "x"}, "Select your programme"),
    ],
)
def test_invalid_profile_is_rejected(api, patch, message):
    r = api.post("/profile", json={**VALID, **patch})
    assert r.status_code == 400
    assert r.json() == {"detail": message}


def test_upper_case_student_id_is_accepted(api):
    assert api.post("/profile", json={**VALID, "studentId": "C87654321"}).status_code == 200


def test_bad_level_is_rejected(api):
    r = api.post("/profile", json={**VALID, "levels": {**VALID["levels"], "MIDGE": "EXPERT"}})
    assert r.status_code == 400


def test_auto_created_profile_is_not_onboarded(api, db_session):
    # chat creates a bare profile on first contact
    api.post("/chat", json={"subject": "MATHS", "init": True})
    body = api.get("/profile").json()
    assert body["completed"] is False
    assert body["profile"]["studentId"] == ""


def test_student_id_with_trailing_newline_is_not_stored(api, db_session):
    r = api.post("/profile", json={**VALID, "studentId": "c12345678\n"})
    assert r.status_code == 400
    assert db_session.get(UserProfile, STUDENT) is None
