import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from docsumm.core.errors import AppError, ErrorCode
from docsumm.generation.client import GenerationClient, backoff_delay_ms, is_model_selection_error

from .conftest import VALID_SUMMARY


def _status_error(cls, status: int, message: str):
    response = httpx.Response(status, request=httpx.Request("POST", "https://api.test/v1/responses"))
    return cls(message, response=response, body=None)


class FakeResponses:
    """Per-model scripted outcomes; the last outcome repeats."""

    def __init__(self, script):
        self.script = {model: list(outcomes) for model, outcomes in script.items()}
        self.calls = []

    async def create(self, *, model, input, **kwargs):
        self.calls.append({"model": model, "input": input, **kwargs})
        outcomes = self.script[model]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return SimpleNamespace(output_text=outcome)


def _client(script, **kwargs):
    responses = FakeResponses(script)
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    params = dict(
        api_key="sk-test",
        max_retries=2,
        retry_base_delay_ms=700,
        client_factory=lambda key, base_url: SimpleNamespace(responses=responses),
        sleep=record_sleep,
    )
    params.update(kwargs)
    return GenerationClient(**params), responses, sleeps


async def test_model_not_found_advances_without_retry():
    gen, responses, sleeps = _client(
        {"model-a": [_status_error(openai.NotFoundError, 404, "model not found")], "model-b": [VALID_SUMMARY]}
    )

    text = await gen.generate("prompt", ["model-a", "model-b"])

    assert text == VALID_SUMMARY
    assert [c["model"] for c in responses.calls] == ["model-a", "model-b"]
    assert sleeps == []


async def test_every_candidate_missing_is_config_invalid():
    gen, responses, _ = _client(
        {
            "model-a": [_status_error(openai.NotFoundError, 404, "not found")],
            "model-b": [_status_error(openai.BadRequestError, 400, "The model `model-b` does not exist")],
        }
    )

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a", "model-b"])

    assert exc.value.code == ErrorCode.CONFIG_INVALID
    assert len(responses.calls) == 2


async def test_retryable_errors_back_off_then_succeed():
    overloaded = _status_error(openai.InternalServerError, 503, "overloaded")
    gen, responses, sleeps = _client({"model-a": [overloaded, overloaded, VALID_SUMMARY]})

    assert await gen.generate("prompt", ["model-a"]) == VALID_SUMMARY
    assert len(responses.calls) == 3
    assert sleeps == [0.7, 1.4]


async def test_exhausted_retries_advance_to_next_candidate():
    throttled = _status_error(openai.RateLimitError, 429, "rate limit")
    gen, responses, sleeps = _client({"model-a": [throttled], "model-b": [VALID_SUMMARY]}, max_retries=1)

    assert await gen.generate("prompt", ["model-a", "model-b"]) == VALID_SUMMARY
    assert [c["model"] for c in responses.calls] == ["model-a", "model-a", "model-b"]
    assert sleeps == [0.7]


async def test_exhausted_retries_on_last_candidate_is_request_failed():
    gen, responses, _ = _client({"model-a": [_status_error(openai.InternalServerError, 500, "boom")]})

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])

    assert exc.value.code == ErrorCode.REQUEST_FAILED
    assert len(responses.calls) == 3


async def test_non_retryable_client_error_fails_fast():
    gen, responses, sleeps = _client({"model-a": [_status_error(openai.AuthenticationError, 401, "bad key")]})

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])

    assert exc.value.code == ErrorCode.REQUEST_FAILED
    assert len(responses.calls) == 1
    assert sleeps == []


async def test_timeout_is_classified():
    async def hang():
        await asyncio.sleep(5)

    gen, responses, sleeps = _client({"model-a": [hang]}, timeout_s=0.01, max_retries=1)

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])

    assert exc.value.code == ErrorCode.TIMEOUT
    assert len(responses.calls) == 2
    assert sleeps == [0.7]


async def test_unexpected_exception_is_unknown():
    gen, _, _ = _client({"model-a": [KeyError("output")]})

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])
    assert exc.value.code == ErrorCode.UNKNOWN


async def test_blank_text_is_empty_response():
    gen, _, _ = _client({"model-a": ["   \n"]})

    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])
    assert exc.value.code == ErrorCode.EMPTY_RESPONSE


async def test_missing_key_and_missing_models():
    gen, responses, _ = _client({"model-a": [VALID_SUMMARY]}, api_key=None)
    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["model-a"])
    assert exc.value.code == ErrorCode.MISSING_KEY
    assert responses.calls == []

    gen, _, _ = _client({})
    with pytest.raises(AppError) as exc:
        await gen.generate("prompt", ["", ""])
    assert exc.value.code == ErrorCode.CONFIG_INVALID


async def test_video_url_is_sent_as_a_file_input_part():
    gen, responses, _ = _client({"model-a": [VALID_SUMMARY]})

    await gen.generate("prompt", ["model-a"], video_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    user = responses.calls[0]["input"][1]
    assert user["role"] == "user"
    assert user["content"] == [
        {"type": "input_text", "text": "prompt"},
        {"type": "input_file", "file_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"},
    ]


def test_backoff_is_capped():
    assert backoff_delay_ms(700, 0) == 700
    assert backoff_delay_ms(700, 3) == 5600
    assert backoff_delay_ms(700, 10, 12_000) == 12_000


def test_model_selection_classification():
    assert is_model_selection_error(Exception("whatever"), 404)
    assert is_model_selection_error(Exception("Unknown model: x"), 400)
    assert not is_model_selection_error(Exception("invalid temperature"), 400)
    assert not is_model_selection_error(Exception("model not found"), 500)
