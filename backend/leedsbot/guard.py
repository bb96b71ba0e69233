"""Academic-integrity guard.

Messages pass through a short chain of classifiers. Each stage answers
``allow``, ``block`` or ``defer``; the first non-``defer`` answer wins and a
fully deferred chain lets the message through. The keyword stages are pure
and cheap; the semantic stage asks the model and is only consulted for text
that mentions assessed work. Missing a cheating attempt is preferred over
refusing legitimate study help, so the allowlist beats keyword hits and the
semantic stage fails open.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .llm_client import ChatCompletionClient, message, structured_completion
from .settings import settings

logger = logging.getLogger(__name__)

ALLOW = "allow"
BLOCK = "block"
DEFER = "defer"

KEYWORDS = (
	# direct asks
	"do my assignment", "write my assignment", "finish my coursework", "solve my homework",
	"complete my essay", "write my dissertation", "make my report",
	# milder forms
	"make an assignment for me", "generate my assignment", "full assignment",
	"ready to submit", "no plagiarism detector",
	# exam/test
	"answer this exam", "quiz answer key", "test answers",
)

ALLOW_HINTS = (
	"outline", "plan", "rubric", "explain", "feedback", "critique",
	"practice questions", "example questions", "worked example",
)

_ASSESSED_WORK = r"(assignment|coursework|essay|report|dissertation|homework|exam|quiz)"
_ASSESSED_WORK_RE = re.compile(_ASSESSED_WORK, re.IGNORECASE)
_DELIVERY_RE = re.compile(_ASSESSED_WORK + r".*(for me|submit|ready)", re.IGNORECASE)


@dataclass(frozen=True)
class GuardVerdict:
	decision: str
	reason: Optional[str] = None
	hit: Optional[str] = None

	@property
	def blocked(self) -> bool:
		return self.decision == BLOCK

	def as_dict(self) -> dict:
		out: dict = {"blocked": self.blocked}
		if self.reason:
			out["reason"] = self.reason
		if self.hit:
			out["hit"] = self.hit
		return out


RuleStage = Callable[[str], GuardVerdict]


def _allow_hint_stage(text: str) -> GuardVerdict:
	lowered = text.lower()
	if any(h in lowered for h in ALLOW_HINTS):
		return GuardVerdict(ALLOW)
	return GuardVerdict(DEFER)


def _keyword_stage(text: str) -> GuardVerdict:
	lowered = text.lower()
	for keyword in KEYWORDS:
		if keyword in lowered:
			return GuardVerdict(BLOCK, reason="Direct request to generate assessed work.", hit=keyword)
	return GuardVerdict(DEFER)


def _delivery_stage(text: str) -> GuardVerdict:
	if _DELIVERY_RE.search(text):
		return GuardVerdict(BLOCK, reason="Likely assessed work request.")
	return GuardVerdict(DEFER)


RULE_STAGES: Sequence[RuleStage] = (_allow_hint_stage, _keyword_stage, _delivery_stage)


def rule_guard(text: str) -> GuardVerdict:
	"""Run the keyword stages in order and return the first decisive verdict."""
	text = text or ""
	for stage in RULE_STAGES:
		verdict = stage(text)
		if verdict.decision != DEFER:
			return verdict
	return GuardVerdict(DEFER)


def mentions_assessed_work(text: str) -> bool:
	return bool(_ASSESSED_WORK_RE.search(text or ""))


def _classifier_prompt(text: str) -> str:
	return (
		"Classify if the user is asking you to produce assessed academic work (verbatim, ready-to-submit).\n"
		'Answer ONLY "allow" or "block".\n'
		f'Text: """{text}"""'
	)


def _parse_label(raw: str) -> GuardVerdict:
	if "block" in (raw or "").lower():
		return GuardVerdict(BLOCK, reason="Classified as a request for assessed work.")
	return GuardVerdict(ALLOW)


async def semantic_guard(text: str, client: Optional[ChatCompletionClient]) -> GuardVerdict:
	if client is None:
		return GuardVerdict(DEFER)
	try:
		return await asyncio.wait_for(
			structured_completion(
				client,
				[message("user", _classifier_prompt(text))],
				parse=_parse_label,
				fallback=GuardVerdict(ALLOW),
				temperature=0,
				label="guard",
			),
			timeout=settings.guard_timeout_seconds,
		)
	except Exception as exc:
		logger.warning("semantic guard unavailable, allowing message: %r", exc)
		return GuardVerdict(ALLOW)


async def check_message(text: str, client: Optional[ChatCompletionClient]) -> GuardVerdict:
	verdict = rule_guard(text)
	if verdict.decision != DEFER:
		return verdict
	if not mentions_assessed_work(text):
		return GuardVerdict(ALLOW)
	verdict = await semantic_guard(text, client)
	if verdict.decision == DEFER:
		return GuardVerdict(ALLOW)
	return verdict
