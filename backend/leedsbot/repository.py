from __future__ import annotations
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import (
	Degree,
	Document,
	Interaction,
	Level,
	QuizAttempt,
	Subject,
	SubjectLevel,
	UserProfile,
)

MAX_DOCUMENT_TEXT = 200_000
MAX_INTERACTION_TEXT = 8000
MAX_GOALS = 1000


def get_profile(db: Session, email: str) -> Optional[UserProfile]:
	return db.get(UserProfile, email)


def upsert_profile(db: Session, email: str, **fields: Any) -> UserProfile:
	row = db.get(UserProfile, email)
	if not row:
		row = UserProfile(email=email, degree=Degree.BACHELORS.value)
		db.add(row)
	for key, value in fields.items():
		setattr(row, key, value)
	db.commit()
	return row


def ensure_profile(db: Session, email: str) -> UserProfile:
	"""Create a bare profile on first contact; never overwrite an existing one."""
	row = db.get(UserProfile, email)
	if row:
		return row
	return upsert_profile(db, email)


def subject_levels(db: Session, email: str) -> Dict[str, str]:
	rows = db.execute(select(SubjectLevel).where(SubjectLevel.email == email)).scalars().all()
	return {row.subject: row.level for row in rows}


def get_level(db: Session, email: str, subject: Subject) -> Optional[Level]:
	row = _subject_level_row(db, email, subject)
	return Level(row.level) if row else None


def _subject_level_row(db: Session, email: str, subject: Subject) -> Optional[SubjectLevel]:
	stmt = select(SubjectLevel).where(SubjectLevel.email == email, SubjectLevel.subject == Subject(subject).value)
	return db.execute(stmt).scalars().first()


def upsert_level(db: Session, email: str, subject: Subject, level: Optional[Level] = None) -> SubjectLevel:
	"""Set the level for (email, subject); with ``level=None`` only create the BEGINNER default."""
	row = _subject_level_row(db, email, subject)
	if not row:
		row = SubjectLevel(email=email, subject=Subject(subject).value, level=Level(level or Level.BEGINNER).value)
		db.add(row)
	elif level is not None:
		row.level = Level(level).value
	db.commit()
	return row


def is_onboarded(db: Session, email: str) -> bool:
	profile = db.get(UserProfile, email)
	if not profile or not profile.student_id or not profile.degree or not profile.degree_name:
		return False
	levels = subject_levels(db, email)
	return all(s.value in levels for s in Subject)


def find_documents(
	db: Session,
	subject: Subject,
	level: Level,
	*,
	owner: Optional[str] = None,
	take: int = 12,
) -> List[Document]:
	"""Newest documents for (subject, level); ``owner=None`` searches the shared pool."""
	stmt = select(Document).where(Document.subject == Subject(subject).value, Document.level == Level(level).value)
	if owner is not None:
		stmt = stmt.where(Document.owner_email == owner)
	stmt = stmt.order_by(Document.created_at.desc(), Document.id.desc()).limit(take)
	return list(db.execute(stmt).scalars().all())


def documents_for_owner(db: Session, owner: str, take: int = 100) -> List[Document]:
	stmt = (
		select(Document)
		.where(Document.owner_email == owner)
		.order_by(Document.created_at.desc(), Document.id.desc())
		.limit(take)
	)
	return list(db.execute(stmt).scalars().all())


def create_document(
	db: Session,
	*,
	owner: Optional[str],
	subject: Subject,
	level: Level,
	filename: str,
	mime_type: str,
	text: str,
) -> Document:
	row = Document(
		owner_email=owner,
		subject=Subject(subject).value,
		level=Level(level).value,
		filename=filename,
		mime_type=mime_type,
		text_content=(text or "")[:MAX_DOCUMENT_TEXT],
	)
	db.add(row)
	db.commit()
	return row


def recent_interactions(
	db: Session,
	email: str,
	subject: Subject,
	*,
	level: Optional[Level] = None,
	with_prompt: bool = False,
	take: int = 8,
) -> List[Interaction]:
	"""Newest interactions first."""
	stmt = select(Interaction).where(Interaction.email == email, Interaction.subject == Subject(subject).value)
	if level is not None:
		stmt = stmt.where(Interaction.level == Level(level).value)
	if with_prompt:
		stmt = stmt.where(Interaction.prompt != "")
	stmt = stmt.order_by(Interaction.created_at.desc(), Interaction.id.desc()).limit(take)
	return list(db.execute(stmt).scalars().all())


def create_interaction(
	db: Session,
	*,
	email: str,
	subject: Subject,
	level: Level,
	prompt: str,
	answer: str,
	used_doc_ids: Sequence[int],
) -> Interaction:
	row = Interaction(
		email=email,
		subject=Subject(subject).value,
		level=Level(level).value,
		prompt=(prompt or "")[:MAX_INTERACTION_TEXT],
		answer=(answer or "")[:MAX_INTERACTION_TEXT],
		used_doc_ids_json=json.dumps(list(used_doc_ids)),
	)
	db.add(row)
	db.commit()
	return row


def recent_attempts(
	db: Session,
	subject: Subject,
	*,
	email: Optional[str] = None,
	since: Optional[datetime] = None,
	take: int = 3,
) -> List[QuizAttempt]:
	"""Newest attempts first; ``email=None`` reads the whole cohort."""
	stmt = select(QuizAttempt).where(QuizAttempt.subject == Subject(subject).value)
	if email is not None:
		stmt = stmt.where(QuizAttempt.email == email)
	if since is not None:
		stmt = stmt.where(QuizAttempt.created_at >= since)
	stmt = stmt.order_by(QuizAttempt.created_at.desc(), QuizAttempt.id.desc()).limit(take)
	return list(db.execute(stmt).scalars().all())


def cohort_window_start(days: int = 14) -> datetime:
	return datetime.utcnow() - timedelta(days=days)


def create_attempt(
	db: Session,
	*,
	email: str,
	subject: Subject,
	items: Sequence[Mapping[str, Any]],
	responses: Mapping[int, int],
	score: int,
	max_score: int,
) -> QuizAttempt:
	row = QuizAttempt(
		email=email,
		subject=Subject(subject).value,
		items_json=json.dumps(list(items)),
		responses_json=json.dumps({str(k): v for k, v in responses.items()}),
		score=score,
		max_score=max_score,
	)
	db.add(row)
	db.commit()
	return row
