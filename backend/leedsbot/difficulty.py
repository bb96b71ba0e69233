from __future__ import annotations
import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .models import Level, QuizAttempt


LEVEL_ORDER: List[Level] = [Level.BEGINNER, Level.INTERMEDIATE, Level.ADVANCED]

BUMP_UP_AT = 0.8
BUMP_DOWN_BELOW = 0.5
WINDOW = 3


@dataclass
class DifficultyPlan:
	target_level: Level
	weak_topics: List[str] = field(default_factory=list)


def bump(level: Level, direction: int) -> Level:
	idx = LEVEL_ORDER.index(Level(level))
	idx = max(0, min(len(LEVEL_ORDER) - 1, idx + direction))
	return LEVEL_ORDER[idx]


def _loads(raw: Any) -> Any:
	if raw is None or isinstance(raw, (list, dict)):
		return raw
	try:
		return json.loads(raw)
	except (TypeError, ValueError):
		return None


def attempt_items(attempt: QuizAttempt) -> List[Any]:
	items = _loads(attempt.items_json)
	return items if isinstance(items, list) else []


def attempt_responses(attempt: QuizAttempt) -> Mapping[Any, Any]:
	responses = _loads(attempt.responses_json)
	return responses if isinstance(responses, dict) else {}


def response_for(responses: Mapping[Any, Any], index: int) -> Any:
	# JSON round-trips turn integer keys into strings
	if index in responses:
		return responses[index]
	return responses.get(str(index))


def missed_topics(items: Sequence[Any], responses: Mapping[Any, Any]) -> Iterable[str]:
	"""Yield the topic of every item whose recorded response is not its answer."""
	for i, item in enumerate(items):
		if not isinstance(item, dict):
			continue
		topic = item.get("topic")
		if not topic or not isinstance(topic, str):
			continue
		if response_for(responses, i) != item.get("answerIndex"):
			yield topic


def top_topics(topics: Iterable[str], limit: int = 3) -> List[str]:
	# Counter keeps first-seen order and sorted() is stable, so ties stay in that order
	tally = Counter(topics)
	ranked = sorted(tally.items(), key=lambda kv: kv[1], reverse=True)
	return [topic for topic, _ in ranked[:limit]]


def _ratio(attempt: QuizAttempt) -> Optional[float]:
	try:
		score = float(attempt.score)
		max_score = float(attempt.max_score)
	except (TypeError, ValueError):
		return None
	return score / max(1.0, max_score)


def adapt_difficulty(attempts: Sequence[QuizAttempt], base_level: Level) -> DifficultyPlan:
	"""Pick the next quiz level and weak topics from the newest attempts (newest first)."""
	base_level = Level(base_level)
	recent = list(attempts)[:WINDOW]
	if not recent:
		return DifficultyPlan(target_level=base_level)

	ratios = [r for r in (_ratio(a) for a in recent) if r is not None]
	target = base_level
	if ratios:
		mean = sum(ratios) / len(ratios)
		if mean >= BUMP_UP_AT:
			target = bump(base_level, +1)
		elif mean < BUMP_DOWN_BELOW:
			target = bump(base_level, -1)

	newest = recent[0]
	weak = top_topics(missed_topics(attempt_items(newest), attempt_responses(newest)))
	return DifficultyPlan(target_level=target, weak_topics=weak)
