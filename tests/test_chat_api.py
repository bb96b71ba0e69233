import json

from sqlalchemy import select

from conftest import STUDENT, FakeChatClient
from leedsbot import chat
from leedsbot.chat import UPLOAD_NUDGE, default_intake_questions, summarize_intake, IntakeAnswer
from leedsbot.llm_client import UpstreamDegraded
from leedsbot.models import Interaction, Subject, SubjectLevel, UserProfile


def tutor_reply(answer="A join combines rows.", next_steps=("Try a join",), ask=("Which database?",)):
    return json.dumps({"answer": answer, "nextSteps": list(next_steps), "ask": list(ask)})


def interactions(db_session):
    return db_session.execute(select(Interaction)).scalars().all()


def test_faq_answers_without_model_or_profile(api, llm, db_session):
    llm["client"] = FakeChatClient(tutor_reply())
    r = api.post("/chat", json={"subject": "DATABASE_SYSTEMS", "message": "What is SQL?"})
    assert r.status_code == 200
    body = r.json()
    assert body["answer"].startswith("SQL stands for Structured Query Language.")
    assert len(body["nextSteps"]) == 3
    assert len(body["ask"]) == 2
    assert llm["client"].calls == []
    assert db_session.get(UserProfile, STUDENT) is None
    assert interactions(db_session) == []


def test_assessed_work_request_is_refused(api, llm, db_session):
    llm["client"] = FakeChatClient(tutor_reply())
    r = api.post("/chat", json={"subject": "MATHS", "message": "please write my assignment on integrals"})
    assert r.status_code == 200
    body = r.json()
    assert body["blocked"] is True
    assert body["policy"] == "academic-integrity"
    assert [alt["id"] for alt in body["alternatives"]] == ["outline", "plan", "critique", "explain", "practice"]
    assert llm["client"].calls == []
    assert interactions(db_session) == []


def test_init_without_documents_returns_template(api, llm, db_session):
    llm["client"] = FakeChatClient('{"ask": ["unused"]}')
    r = api.post("/chat", json={"subject": "DATABASE_SYSTEMS", "init": True})
    assert r.status_code == 200
    assert r.json() == {"ask": default_intake_questions(Subject.DATABASE_SYSTEMS)}
    assert "DATABASE SYSTEMS" in r.json()["ask"][0]
    assert llm["client"].calls == []
    # first contact creates the profile and BEGINNER level
    assert db_session.get(UserProfile, STUDENT) is not None
    level = db_session.execute(select(SubjectLevel)).scalars().one()
    assert (level.subject, level.level) == ("DATABASE_SYSTEMS", "BEGINNER")


def test_init_with_documents_asks_the_model(api, llm, add_document):
    add_document(STUDENT, filename="lecture1.txt", text="limits and continuity")
    llm["client"] = FakeChatClient('{"ask": ["Q1?", "Q2?", "Q3?", "Q4?", "Q5?", "Q6?", "Q7?"]}')
    r = api.post("/chat", json={"subject": "MATHS", "init": True})
    assert r.json() == {"ask": ["Q1?", "Q2?", "Q3?", "Q4?", "Q5?", "Q6?"]}
    user_msg = llm["client"].calls[0]["messages"][1]["content"]
    assert "#Doc1 (lecture1.txt)" in user_msg


def test_init_with_documents_falls_back_on_bad_reply(api, llm, add_document):
    add_document(STUDENT)
    llm["client"] = FakeChatClient("not json")
    r = api.post("/chat", json={"subject": "MATHS", "init": True})
    assert r.json() == {"ask": default_intake_questions(Subject.MATHS)}


def test_intake_answers_become_goals(api, llm, db_session):
    llm["client"] = FakeChatClient(tutor_reply())
    intake = [
        {"q": "Which topics in MATHS are you working on now?", "a": "vectors"},
        {"q": "What’s your immediate goal (exam, assignment, concept mastery)?", "a": "exam"},
        {"q": "Where do you feel least confident?", "a": "proofs"},
    ]
    r = api.post("/chat", json={"subject": "MATHS", "intake": intake})
    assert r.status_code == 200
    profile = db_session.get(UserProfile, STUDENT)
    assert profile.goals == "Goal: exam | Topics: vectors | Weakness: proofs"
    row = interactions(db_session)[0]
    assert row.prompt == "[intake/plan]"


def test_summarize_intake_missing_answers():
    assert summarize_intake([]) == "Goal:  | Topics:  | Weakness: "
    assert summarize_intake([IntakeAnswer(q="What are you weak at?", a="x" * 2000)]).startswith("Goal:  | Topics:  | Weakness: xxx")
    assert len(summarize_intake([IntakeAnswer(q="goal", a="y" * 2000)])) == 1000


def test_json_reply_is_returned_and_logged(api, llm, db_session, add_document):
    doc = add_document(STUDENT, text="joins notes")
    llm["client"] = FakeChatClient(tutor_reply())
    question = "Can you walk me through how an inner join differs from a left join?"
    r = api.post("/chat", json={"subject": "MATHS", "message": question})
    assert r.status_code == 200
    assert r.json() == {"answer": "A join combines rows.", "nextSteps": ["Try a join"], "ask": ["Which database?"]}

    rows = interactions(db_session)
    assert len(rows) == 1
    assert rows[0].prompt == question
    assert rows[0].answer == "A join combines rows."
    assert json.loads(rows[0].used_doc_ids_json) == [doc.id]

    call = llm["client"].calls[0]
    assert call["messages"][0]["role"] == "system"
    assert "Use ONLY the \"Documents\"" in call["messages"][0]["content"]
    assert call["messages"][-1]["content"].endswith("Question:\n" + question)


def test_upload_nudge_when_no_documents(api, llm):
    llm["client"] = FakeChatClient(tutor_reply(next_steps=["a", "b"]))
    r = api.post("/chat", json={"subject": "MIDGE", "message": "How should I structure my revision over a term?"})
    body = r.json()
    assert body["nextSteps"] == ["a", "b", UPLOAD_NUDGE]
    system = llm["client"].calls[0]["messages"][0]["content"]
    assert "There are no uploaded documents." in system


def test_non_json_reply_becomes_answer(api, llm, db_session, add_document):
    add_document(STUDENT)
    llm["client"] = FakeChatClient("Plain prose explanation.")
    r = api.post("/chat", json={"subject": "MATHS", "message": "Why does the chain rule multiply the derivatives together?"})
    body = r.json()
    assert body["answer"] == "Plain prose explanation."
    assert body["nextSteps"] == chat.DEFAULT_NEXT_STEPS
    assert body["ask"] is None


def test_upstream_failure_gives_degraded_reply(api, llm, db_session, add_document):
    add_document(STUDENT)
    llm["client"] = FakeChatClient(UpstreamDegraded("429 quota"))
    r = api.post("/chat", json={"subject": "MATHS", "message": "Explain integration by parts with a worked example please"})
    assert r.status_code == 200
    body = r.json()
    assert body["answer"].startswith("AI quota hit.")
    assert body["nextSteps"] == ["Extract 3 key ideas", "Solve 2 problems", "Write a brief summary"]
    assert interactions(db_session)[0].answer.startswith("AI quota hit.")


def test_offline_reply_without_model(api, db_session):
    r = api.post("/chat", json={"subject": "MATHS", "message": "How do I find the inverse of a 2x2 matrix step by step?"})
    assert r.status_code == 200
    body = r.json()
    assert body["answer"].startswith("Model unavailable.")
    assert len(body["ask"]) == 2
    assert interactions(db_session) == []


def test_history_included_for_long_questions_only(api, llm, add_interaction):
    add_interaction(prompt="earlier question", answer="earlier answer", age_minutes=5)
    llm["client"] = FakeChatClient(tutor_reply())

    api.post("/chat", json={"subject": "MATHS", "message": "Can you continue from the previous example with a harder one?"})
    long_call = llm["client"].calls[0]["messages"]
    assert {"role": "user", "content": "earlier question"} in long_call
    assert {"role": "assistant", "content": "earlier answer"} in long_call

    api.post("/chat", json={"subject": "MATHS", "message": "and then?"})
    short_call = llm["client"].calls[1]["messages"]
    assert len(short_call) == 2


def test_interaction_log_failure_still_replies(api, llm, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(chat.repository, "create_interaction", boom)
    llm["client"] = FakeChatClient(tutor_reply())
    r = api.post("/chat", json={"subject": "MATHS", "message": "Explain the difference between mean and median please"})
    assert r.status_code == 200
    assert r.json()["answer"] == "A join combines rows."


def test_unknown_subject_defaults_to_maths(api, db_session):
    r = api.post("/chat", json={"subject": "astrology", "init": True})
    assert r.status_code == 200
    level = db_session.execute(select(SubjectLevel)).scalars().one()
    assert level.subject == "MATHS"
