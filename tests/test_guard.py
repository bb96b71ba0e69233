import asyncio

import pytest

from conftest import FakeChatClient, run
from leedsbot import guard
from leedsbot.guard import check_message, mentions_assessed_work, rule_guard, semantic_guard
from leedsbot.llm_client import UpstreamDegraded


@pytest.mark.parametrize(
    "text",
    [
        "give me an outline for my assignment",
        "Can you explain the rubric? Please do my assignment",
        "write my dissertation plan with me",
        "I want practice questions, not test answers",
    ],
)
def test_allow_hint_wins_over_keywords(text):
    verdict = rule_guard(text)
    assert not verdict.blocked
    assert verdict.decision == guard.ALLOW


@pytest.mark.parametrize("phrase", ["write my dissertation", "do my assignment", "quiz answer key"])
def test_banned_phrase_blocks_with_hit(phrase):
    verdict = rule_guard(phrase)
    assert verdict.blocked
    assert verdict.hit == phrase
    assert verdict.reason == "Direct request to generate assessed work."


def test_banned_phrase_is_case_insensitive():
    verdict = rule_guard("Please WRITE MY ASSIGNMENT by Friday")
    assert verdict.blocked
    assert verdict.hit == "write my assignment"


def test_delivery_heuristic_blocks_without_hit():
    verdict = rule_guard("I need the essay written for me by tonight")
    assert verdict.blocked
    assert verdict.hit is None
    assert verdict.reason == "Likely assessed work request."
    assert verdict.as_dict() == {"blocked": True, "reason": "Likely assessed work request."}


def test_plain_question_defers():
    verdict = rule_guard("How does a hash index work?")
    assert not verdict.blocked
    assert verdict.decision == guard.DEFER


def test_mentions_assessed_work():
    assert mentions_assessed_work("Help me understand the Coursework brief")
    assert not mentions_assessed_work("What is a join?")
    assert not mentions_assessed_work("")


def test_semantic_stage_blocks_on_block_label():
    client = FakeChatClient("block")
    verdict = run(check_message("my coursework on normal forms is due", client))
    assert verdict.blocked
    assert len(client.calls) == 1
    assert client.calls[0]["temperature"] == 0


def test_semantic_stage_allows_on_allow_label():
    client = FakeChatClient("Allow")
    verdict = run(check_message("my coursework on normal forms is due", client))
    assert not verdict.blocked


def test_semantic_stage_only_runs_when_assessed_work_is_mentioned():
    client = FakeChatClient("block")
    verdict = run(check_message("what is a foreign key", client))
    assert not verdict.blocked
    assert client.calls == []


def test_semantic_stage_skipped_without_client():
    verdict = run(check_message("my coursework on normal forms is due", None))
    assert not verdict.blocked
    assert run(semantic_guard("anything", None)).decision == guard.DEFER


def test_rule_block_does_not_consult_model():
    client = FakeChatClient("allow")
    verdict = run(check_message("do my assignment", client))
    assert verdict.blocked
    assert client.calls == []


@pytest.mark.parametrize("error", [UpstreamDegraded("quota"), RuntimeError("boom"), ConnectionError("down")])
def test_guard_fails_open_when_classifier_raises(error):
    client = FakeChatClient(error)
    verdict = run(check_message("my homework on sets", client))
    assert not verdict.blocked


def test_guard_fails_open_on_timeout(monkeypatch):
    monkeypatch.setattr(guard.settings, "guard_timeout_seconds", 0.01)

    class SlowClient(FakeChatClient):
        async def complete(self, messages, *, temperature=0.2, json_mode=False):
            await asyncio.sleep(1)
            return "block"

    verdict = run(check_message("my homework on sets", SlowClient()))
    assert not verdict.blocked
