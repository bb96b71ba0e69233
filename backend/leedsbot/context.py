from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from sqlalchemy.orm import Session

from . import repository
from .difficulty import attempt_items, attempt_responses, missed_topics, top_topics
from .models import Document, Interaction, Level, Subject

logger = logging.getLogger(__name__)

MAX_DOCUMENTS = 12
DOC_SNIPPET_CHARS = 2000
DOCS_TEXT_CHARS = 10_000
MAX_RECENT_QUESTIONS = 15
QUESTION_SNIPPET_CHARS = 600
QUESTIONS_TEXT_CHARS = 5000
COHORT_WINDOW_DAYS = 14
COHORT_MAX_ATTEMPTS = 200
HISTORY_TURNS = 8

# Canonical syllabus topics, used to steer generation when neither notes nor cohort results say more
GLOBAL_TOPICS: Dict[Subject, Dict[Level, List[str]]] = {
	Subject.DATABASE_SYSTEMS: {
		Level.BEGINNER: ["keys", "joins", "sql-dml", "normalization", "constraints"],
		Level.INTERMEDIATE: ["indexes", "query-plans", "transactions", "isolation-levels", "views"],
		Level.ADVANCED: ["partitioning", "sharding", "concurrency", "materialized-views", "optimizer-hints"],
	},
	Subject.MATHS: {
		Level.BEGINNER: ["arithmetic", "fractions", "basic-algebra"],
		Level.INTERMEDIATE: ["quadratics", "functions", "trig-basics"],
		Level.ADVANCED: ["calculus", "linear-algebra", "probability"],
	},
	Subject.MIDGE: {
		Level.BEGINNER: ["intro"],
		Level.INTERMEDIATE: ["core"],
		Level.ADVANCED: ["advanced"],
	},
}


@dataclass
class ContextBundle:
	documents: List[Document] = field(default_factory=list)
	documents_text: str = ""
	recent_questions_text: str = ""
	cohort_weak_topics: List[str] = field(default_factory=list)
	global_topics: List[str] = field(default_factory=list)

	@property
	def has_documents(self) -> bool:
		return bool(self.documents)

	@property
	def document_ids(self) -> List[int]:
		return [d.id for d in self.documents]


def trim(text: str, limit: int) -> str:
	return text if len(text) <= limit else text[:limit]


def select_documents(db: Session, email: str, subject: Subject, level: Level) -> List[Document]:
	"""The caller's own notes for (subject, level); the shared pool only when they have none."""
	own = repository.find_documents(db, subject, level, owner=email, take=MAX_DOCUMENTS)
	if own:
		return own
	return repository.find_documents(db, subject, level, owner=None, take=MAX_DOCUMENTS)


def documents_text(documents: Sequence[Document]) -> str:
	parts = [
		f"#Doc{i + 1} ({d.filename})\n{(d.text_content or '')[:DOC_SNIPPET_CHARS]}"
		for i, d in enumerate(documents)
	]
	return trim("\n\n".join(parts), DOCS_TEXT_CHARS)


def recent_questions_text(db: Session, email: str, subject: Subject) -> str:
	rows = repository.recent_interactions(db, email, subject, with_prompt=True, take=MAX_RECENT_QUESTIONS)
	parts = [
		f"#Q{i + 1} ({row.created_at.isoformat()}):\n{(row.prompt or '')[:QUESTION_SNIPPET_CHARS]}"
		for i, row in enumerate(rows)
	]
	return trim("\n\n".join(parts), QUESTIONS_TEXT_CHARS)


def cohort_weak_topics(db: Session, subject: Subject) -> List[str]:
	try:
		attempts = repository.recent_attempts(
			db,
			subject,
			since=repository.cohort_window_start(COHORT_WINDOW_DAYS),
			take=COHORT_MAX_ATTEMPTS,
		)
	except Exception:
		logger.exception("cohort attempts unavailable for %s", Subject(subject).value)
		db.rollback()
		return []
	topics: List[str] = []
	for attempt in attempts:
		topics.extend(missed_topics(attempt_items(attempt), attempt_responses(attempt)))
	return top_topics(topics)


def global_topics(subject: Subject, level: Level) -> List[str]:
	return list(GLOBAL_TOPICS.get(Subject(subject), {}).get(Level(level), []))


def recent_history(db: Session, email: str, subject: Subject, level: Level) -> List[Interaction]:
	"""Last few turns for multi-turn coherence, oldest first."""
	rows = repository.recent_interactions(db, email, subject, level=level, take=HISTORY_TURNS)
	return list(reversed(rows))


def build_context(db: Session, email: str, subject: Subject, level: Level) -> ContextBundle:
	docs = select_documents(db, email, subject, level)
	return ContextBundle(
		documents=docs,
		documents_text=documents_text(docs),
		recent_questions_text=recent_questions_text(db, email, subject),
		cohort_weak_topics=cohort_weak_topics(db, subject),
		global_topics=global_topics(subject, level),
	)
