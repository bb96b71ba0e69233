from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from . import repository
from .context import documents_text, recent_history, select_documents
from .guard import check_message
from .llm_client import ChatCompletionClient, Message, message, structured_completion
from .models import Degree, Level, Subject

logger = logging.getLogger(__name__)

GENERIC_MESSAGE_CHARS = 30
MAX_NEXT_STEPS = 8
MAX_ASK = 5
MAX_INTAKE_QUESTIONS = 6

UPLOAD_NUDGE = "Upload class notes or slides so I can tailor explanations to your course."
DEFAULT_NEXT_STEPS = ["Review key definitions", "Try 2 practice problems", "Summarise one concept in your own words"]


@dataclass
class ChatReply:
	answer: str
	next_steps: Optional[List[str]] = None
	ask: Optional[List[str]] = None

	def wire(self) -> Dict[str, Any]:
		return {"answer": self.answer, "nextSteps": self.next_steps, "ask": self.ask}


@dataclass
class IntakeAnswer:
	q: str
	a: str


@dataclass
class ChatTurn:
	subject: Subject
	message: str = ""
	init: bool = False
	intake: List[IntakeAnswer] = field(default_factory=list)


def normalize_subject(raw: Any) -> Subject:
	try:
		return Subject(str(raw or "MATHS").upper())
	except ValueError:
		return Subject.MATHS


# ---- academic-integrity refusal ----

def refusal_message() -> str:
	return (
		"I can’t generate or complete assessed work for you.\n"
		"But I can help you learn it:\n"
		"• clarify the brief and marking criteria,\n"
		"• co-create an outline or plan,\n"
		"• explain concepts with examples,\n"
		"• review your draft and give feedback,\n"
		"• create practice questions.\n\n"
		"Upload your notes or paste your draft, and I’ll help you improve it."
	)


def refusal_payload() -> Dict[str, Any]:
	return {
		"blocked": True,
		"policy": "academic-integrity",
		"message": refusal_message(),
		"alternatives": [
			{"id": "outline", "label": "Build an outline together"},
			{"id": "plan", "label": "Plan–Do–Review study plan"},
			{"id": "critique", "label": "Get feedback on YOUR draft (not mine)"},
			{"id": "explain", "label": "Explain the rubric & criteria"},
			{"id": "practice", "label": "Generate practice questions (not graded work)"},
		],
	}


# ---- canned answers for common short questions ----

@dataclass(frozen=True)
class Faq:
	pattern: re.Pattern
	reply: ChatReply

	def matches(self, text: str) -> bool:
		return bool(self.pattern.search(text))


FAQS: Sequence[Faq] = (
	Faq(
		re.compile(r"^\s*what\s+is\s+sql\??\s*$", re.IGNORECASE),
		ChatReply(
			answer=(
				"SQL stands for Structured Query Language. It is the standard language for relational databases—used to "
				"define tables (DDL), query data (SELECT), modify data (INSERT/UPDATE/DELETE), and control transactions & permissions."
			),
			next_steps=[
				"Run a simple SELECT on a demo table",
				"Filter with WHERE and sort with ORDER BY",
				"Join two tables with an INNER JOIN",
			],
			ask=[
				"Which database are you using (MySQL, Postgres, SQL Server, Oracle)?",
				"Do you prefer worked examples or compact theory?",
			],
		),
	),
	Faq(
		re.compile(r"\b(how|what)\b.*\b(insert(ing)? data|insert into)\b", re.IGNORECASE),
		ChatReply(
			answer=(
				"INSERT adds new rows. Basic form: `INSERT INTO table_name (col1, col2) VALUES (val1, val2);`. "
				"You can insert multiple rows, or insert from a SELECT."
			),
			next_steps=[
				"Create a tiny table and insert 2 rows",
				"Insert multiple rows with one statement",
				"Insert-from-select to copy rows from another table",
			],
			ask=[
				"Want examples for your specific database?",
				"Do you have a table schema I can use for the demo?",
			],
		),
	),
	Faq(
		re.compile(r"^\s*what\s+is\s+(a\s+)?primary\s+key\??\s*$", re.IGNORECASE),
		ChatReply(
			answer=(
				"A primary key uniquely identifies each row in a table. It is unique and not null, "
				"often implemented as an ID column."
			),
			next_steps=[
				"Create a table with an ID PRIMARY KEY",
				"Insert two rows and try inserting a duplicate ID to see the error",
			],
			ask=["Want me to show the syntax for your database?"],
		),
	),
	Faq(
		re.compile(r"^\s*what\s+is\s+(a\s+)?foreign\s+key\??\s*$", re.IGNORECASE),
		ChatReply(
			answer=(
				"A foreign key enforces a relationship from one table to another by referencing the other table’s "
				"primary key, maintaining referential integrity."
			),
			next_steps=[
				"Create two tables (parent and child) with a foreign key",
				"Try inserting a child row that references a non-existent parent to see the constraint",
			],
			ask=["Should I target MySQL, Postgres, SQL Server, or Oracle?"],
		),
	),
)


def match_faq(text: str) -> Optional[ChatReply]:
	for faq in FAQS:
		if faq.matches(text):
			return faq.reply
	return None


# ---- intake ----

def default_intake_questions(subject: Subject) -> List[str]:
	return [
		f"Which topics in {Subject(subject).value.replace('_', ' ', 1)} are you working on now?",
		"What’s your immediate goal (exam, assignment, concept mastery)?",
		"Where do you feel least confident?",
		"Do you prefer worked examples or compact theory?",
		"Any deadlines?",
	]


def _parse_ask(raw: str) -> Optional[List[str]]:
	try:
		data = json.loads(raw.strip())
	except ValueError:
		return None
	ask = data.get("ask") if isinstance(data, dict) else None
	if not isinstance(ask, list) or not ask:
		return None
	return [str(q) for q in ask[:MAX_INTAKE_QUESTIONS]]


async def intake_questions(
	client: Optional[ChatCompletionClient],
	subject: Subject,
	level: Level,
	docs_text: str,
	has_documents: bool,
) -> List[str]:
	fallback = default_intake_questions(subject)
	if not has_documents:
		return fallback
	system = (
		f"You create 4-5 short intake questions tailored to {Subject(subject).value} at {Level(level).value} level, "
		'based ONLY on the document snippets below. Return JSON: { "ask": string[] } and nothing else.'
	)
	return await structured_completion(
		client,
		[message("system", system), message("user", f"Documents:\n{docs_text}")],
		parse=_parse_ask,
		fallback=fallback,
		label="intake",
	)


def _intake_answer(intake: Sequence[IntakeAnswer], pattern: str) -> str:
	rx = re.compile(pattern, re.IGNORECASE)
	for entry in intake:
		if rx.search(entry.q or ""):
			return entry.a or ""
	return ""


def summarize_intake(intake: Sequence[IntakeAnswer]) -> str:
	summary = (
		"Goal: " + _intake_answer(intake, r"goal")
		+ " | Topics: " + _intake_answer(intake, r"topics?")
		+ " | Weakness: " + _intake_answer(intake, r"(least confident|weak|struggl)")
	)
	return summary[:repository.MAX_GOALS]


# ---- tutoring prompt ----

def build_system_prompt(subject: Subject, level: Level, degree: str, has_documents: bool) -> str:
	subject = Subject(subject).value
	level = Level(level).value
	if has_documents:
		grounding = (
			'Use ONLY the "Documents" plus the student\'s current question and the brief chat history. '
			'If documents do not cover the question, say "Insufficient context from uploaded notes." '
			"and ask for the missing file/detail."
		)
	else:
		grounding = (
			f"There are no uploaded documents. Use widely accepted core syllabus knowledge for {subject} at {level}. "
			'DO NOT say "insufficient context" when there are no documents.'
		)
	return " ".join([
		f"You are LeedsBot, a concise HE tutor for {subject} at {level} level (degree: {degree}).",
		grounding,
		'Return ONLY JSON -> { "answer": string, "nextSteps": string[], "ask"?: string[] }',
		'Style: step-by-step, brief, practical. End with 3–6 actionable nextSteps. '
		'Include 2–4 probing follow-up questions in "ask" when helpful.',
	])


def build_user_message(docs_text: str, question: str) -> str:
	return "\n\n".join([
		f"Documents:\n{docs_text or '(none found for this subject/level)'}\n",
		f"Question:\n{question}" if question else "No direct question; give a short study plan based on intake + docs.",
	])


def history_messages(history: Sequence[Any], question: str) -> List[Message]:
	# Short generic questions ignore history to avoid derailment
	if question and len(question) <= GENERIC_MESSAGE_CHARS:
		return []
	out: List[Message] = []
	for turn in history:
		out.append(message("user", turn.prompt or ""))
		out.append(message("assistant", turn.answer or ""))
	return out


def offline_reply() -> ChatReply:
	return ChatReply(
		answer=(
			"Model unavailable. Based on your notes, focus on: definitions → 2 practice problems → self-explanation. "
			"Upload more targeted notes if context is insufficient."
		),
		next_steps=[
			"Skim your notes and extract 3 key points.",
			"Solve 2 related practice questions.",
			"Write a 3-bullet summary and one worked example.",
		],
		ask=["Which topic should we zoom into first?", "Do you prefer examples or theory?"],
	)


def degraded_reply() -> ChatReply:
	return ChatReply(
		answer=(
			"AI quota hit. Quick plan: focus on key terms, a worked example, and 2 practice questions. "
			"Upload specific notes to tailor further."
		),
		next_steps=["Extract 3 key ideas", "Solve 2 problems", "Write a brief summary"],
	)


def _string_list(value: Any, limit: int) -> Optional[List[str]]:
	if not isinstance(value, list):
		return None
	return [str(v) for v in value[:limit]]


def parse_tutor_reply(raw: str) -> ChatReply:
	"""Read the model's JSON reply; non-JSON text becomes the answer itself."""
	raw = (raw or "").strip()
	try:
		data = json.loads(raw)
	except ValueError:
		data = None
	if isinstance(data, dict):
		return ChatReply(
			answer=str(data.get("answer") or "Here is a brief explanation."),
			next_steps=_string_list(data.get("nextSteps"), MAX_NEXT_STEPS),
			ask=_string_list(data.get("ask"), MAX_ASK),
		)
	return ChatReply(answer=raw or "Here is a brief explanation.", next_steps=list(DEFAULT_NEXT_STEPS))


def _log_interaction(
	db: Session,
	email: str,
	subject: Subject,
	level: Level,
	prompt: str,
	answer: str,
	used_doc_ids: Sequence[int],
) -> None:
	try:
		repository.create_interaction(
			db,
			email=email,
			subject=subject,
			level=level,
			prompt=prompt,
			answer=answer,
			used_doc_ids=used_doc_ids,
		)
	except Exception:
		db.rollback()
		logger.exception("interaction log failed for %s/%s", Subject(subject).value, Level(level).value)


async def run_chat_turn(
	db: Session,
	client: Optional[ChatCompletionClient],
	email: str,
	turn: ChatTurn,
) -> Dict[str, Any]:
	subject = turn.subject
	question = (turn.message or "").strip()

	if question:
		verdict = await check_message(question, client)
		if verdict.blocked:
			logger.info("chat: refused assessed-work request (%s)", verdict.reason)
			return refusal_payload()
		faq = match_faq(question)
		if faq is not None:
			return faq.wire()

	repository.ensure_profile(db, email)
	repository.upsert_level(db, email, subject)
	profile = repository.get_profile(db, email)
	level = repository.get_level(db, email, subject) or Level.BEGINNER
	degree = (profile.degree if profile else None) or Degree.BACHELORS.value

	docs = select_documents(db, email, subject, level)
	docs_text = documents_text(docs)
	has_docs = bool(docs)

	if turn.init:
		return {"ask": await intake_questions(client, subject, level, docs_text, has_docs)}

	if turn.intake:
		repository.upsert_profile(db, email, goals=summarize_intake(turn.intake))

	history = recent_history(db, email, subject, level)
	if client is None:
		reply = offline_reply()
	else:
		messages = [
			message("system", build_system_prompt(subject, level, degree, has_docs)),
			*history_messages(history, question),
			message("user", build_user_message(docs_text, question)),
		]
		reply = await structured_completion(
			client,
			messages,
			parse=parse_tutor_reply,
			fallback=degraded_reply(),
			label="chat",
		)

		if not has_docs and reply.next_steps is not None:
			reply.next_steps = [*reply.next_steps, UPLOAD_NUDGE]

		_log_interaction(db, email, subject, level, question or "[intake/plan]", reply.answer, [d.id for d in docs])

	return reply.wire()
