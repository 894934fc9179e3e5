from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, List

import pytest

from core import openai_client
from core.openai_client import ModelCallError, call_model


class FakeResponses:
    def __init__(self, outcomes: List[Any]) -> None:
        self.outcomes = outcomes
        self.requests: List[dict] = []

    async def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return SimpleNamespace(output_text=outcome, usage=SimpleNamespace(input_tokens=3, output_tokens=2, total_tokens=5))


class CountingLimiter:
    def __init__(self) -> None:
        self.acquired = 0

    async def acquire(self) -> float:
        self.acquired += 1
        return 0.0


@pytest.fixture
def fake_responses(monkeypatch: pytest.MonkeyPatch):
    def install(outcomes: List[Any]) -> FakeResponses:
        responses = FakeResponses(outcomes)
        monkeypatch.setattr(openai_client, "_client", SimpleNamespace(responses=responses))
        return responses

    return install


def _call(**kwargs: Any):
    defaults = dict(model="m", system_prompt="sys", user_prompt="user", call_context="test", backoff_base=0.0)
    defaults.update(kwargs)
    return asyncio.run(call_model(**defaults))


def test_transient_errors_are_retried_and_each_attempt_is_rate_limited(fake_responses) -> None:
    responses = fake_responses([TimeoutError("slow"), ConnectionError("reset"), "[]"])
    limiter = CountingLimiter()

    assert _call(limiter=limiter, max_retries=3) == "[]"
    assert len(responses.requests) == 3
    assert limiter.acquired == 3


def test_retries_are_bounded(fake_responses) -> None:
    responses = fake_responses([TimeoutError("slow")] * 5)

    with pytest.raises(ModelCallError):
        _call(max_retries=2)
    assert len(responses.requests) == 2


def test_non_transient_errors_are_not_retried(fake_responses) -> None:
    responses = fake_responses([ValueError("bad payload"), "unused"])

    with pytest.raises(ModelCallError):
        _call(max_retries=3)
    assert len(responses.requests) == 1


def test_prior_turns_sit_between_system_and_user(fake_responses) -> None:
    responses = fake_responses(["ok"])
    turns = [{"role": "user", "content": "first"}, {"role": "assistant", "content": "broken"}]

    text, usage = _call(prior_turns=turns, reasoning="low", return_usage=True)

    assert text == "ok"
    assert usage["total_tokens"] == 5
    sent = responses.requests[0]
    assert [turn["role"] for turn in sent["input"]] == ["system", "user", "assistant", "user"]
    assert sent["reasoning"] == {"effort": "low"}


def test_missing_api_key_is_a_model_call_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(openai_client, "_client", None)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ModelCallError):
        openai_client.get_client()
