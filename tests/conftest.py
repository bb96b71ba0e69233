import asyncio
import json
import os
from datetime import datetime, timedelta

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("OPENROUTER_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leedsbot.db import Base, get_db, init_db
from leedsbot.llm_client import get_chat_client
from leedsbot.main import app
from leedsbot.models import Document, Interaction, QuizAttempt
from leedsbot.routers.auth import User, get_current_user

STUDENT = "student@leeds.ac.uk"


class FakeChatClient:
    """Scripted stand-in for ChatCompletionClient.

    Each call pops the next scripted reply; exceptions in the script are raised.
    Once the script runs out the last entry is repeated.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages, *, temperature=0.2, json_mode=False):
        self.calls.append({"messages": messages, "temperature": temperature, "json_mode": json_mode})
        if not self.replies:
            return ""
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def aclose(self):
        pass


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def llm():
    """Holder for the model client the API sees; tests assign ``llm["client"]``."""
    return {"client": None}


@pytest.fixture
def api(db_session, llm):
    def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_current_user] = lambda: User(email=STUDENT)
    app.dependency_overrides[get_chat_client] = lambda: llm["client"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def anon_api(db_session, llm):
    """API client that goes through real token validation."""

    def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_chat_client] = lambda: llm["client"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def add_document(db_session):
    def _add(owner, subject="MATHS", level="BEGINNER", filename="notes.txt", text="notes", age_minutes=0):
        row = Document(
            owner_email=owner,
            subject=subject,
            level=level,
            filename=filename,
            mime_type="text/plain",
            text_content=text,
            created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _add


@pytest.fixture
def add_attempt(db_session):
    def _add(email=STUDENT, subject="MATHS", items=None, responses=None, score=0, max_score=6, age_minutes=0, raw_items=None):
        row = QuizAttempt(
            email=email,
            subject=subject,
            items_json=raw_items if raw_items is not None else json.dumps(items or []),
            responses_json=json.dumps(responses or {}),
            score=score,
            max_score=max_score,
            created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _add


@pytest.fixture
def add_interaction(db_session):
    def _add(email=STUDENT, subject="MATHS", level="BEGINNER", prompt="q", answer="a", age_minutes=0):
        row = Interaction(
            email=email,
            subject=subject,
            level=level,
            prompt=prompt,
            answer=answer,
            used_doc_ids_json="[]",
            created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _add


def quiz_item(topic="keys", answer=1, **extra):
    item = {
        "question": f"Question about {topic}?",
        "choices": ["A", "B", "C", "D"],
        "answerIndex": answer,
        "explanation": "Because.",
        "topic": topic,
        "difficulty": "BEGINNER",
    }
    item.update(extra)
    return item
