"""Tests for reply cleanup, the OpenAI-backed client and the validate-and-retry loop."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.constants import DEFAULT_LLM_RETRY_DELAYS, LLM_RETRY_DELAYS, parse_retry_delays
from utils.character_utils import ValidationResult
from utils.llm_utils import (
    CancellationToken,
    LLMApiClient,
    OpenAICompletionClient,
    OperationCancelledError,
    check_if_llm_is_up,
    clean_thinking_tags,
    extract_assignment_lines,
    extract_json,
    get_retry_delay,
)
from utils.prompts import LLMPrompt
from utils.response_validators import validate_extract_response

PROMPT = LLMPrompt(system="system", user="user")


def test_clean_thinking_tags():
    assert clean_thinking_tags("<think>hmm</think>\nanswer") == "answer"
    assert clean_thinking_tags("<scratchpad>a\nb</scratchpad>answer") == "answer"
    assert clean_thinking_tags("reasoning cut off</think>answer") == "answer"


def test_extract_json_from_noisy_reply():
    reply = '<think>{"no": 1}</think>Sure!\n```json\n{"characters": [{"canonicalName": "A}", "variations": ["A}"], "gender": "male"}]}\n```\nDone.'
    assert json.loads(extract_json(reply)) == {
        "characters": [{"canonicalName": "A}", "variations": ["A}"], "gender": "male"}],
    }


def test_extract_json_skips_braces_in_leading_prose():
    assert extract_json('I found {2} speakers:\n{"characters": []}') == '{"characters": []}'
    assert extract_json('Set {a, b}. Answer: {"merges": [{"keep": 0, "absorb": [1]}], "unchanged": []} {done}') == (
        '{"merges": [{"keep": 0, "absorb": [1]}], "unchanged": []}'
    )


def test_extract_json_without_decodable_object_returns_first_braces():
    assert extract_json("broken {\"characters\": [} tail") == "{\"characters\": [}"


def test_extract_json_without_object_returns_text():
    assert extract_json("no json here") == "no json here"


def test_extract_assignment_lines():
    reply = "<think>0:A maybe</think>Here you go:\n```\n1:A\n\nbad line\n2:B\n```\nHope this helps."
    assert extract_assignment_lines(reply) == "1:A\nbad line\n2:B"


def test_extract_assignment_lines_all_narration():
    assert extract_assignment_lines("All sentences are narration.") == ""
    assert extract_assignment_lines("") == ""


def test_get_retry_delay_repeats_last_value():
    delays = [1, 3, 5]
    assert [get_retry_delay(i, delays) for i in range(5)] == [1, 3, 5, 5, 5]


def test_empty_retry_delays_fall_back_to_the_default_sequence():
    assert parse_retry_delays("") == DEFAULT_LLM_RETRY_DELAYS
    assert parse_retry_delays(" , ") == DEFAULT_LLM_RETRY_DELAYS
    assert parse_retry_delays(None) == DEFAULT_LLM_RETRY_DELAYS
    assert parse_retry_delays("2, 4") == [2.0, 4.0]

    assert get_retry_delay(0, []) == LLM_RETRY_DELAYS[0] > 0
    assert LLMApiClient(object(), retry_delays=[]).retry_delays == LLM_RETRY_DELAYS


def _openai_mock(content):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
    ))
    return client


def test_build_messages_appends_previous_errors():
    client = OpenAICompletionClient("http://localhost", "key", "model", async_openai_client=_openai_mock("x"))
    messages = client.build_messages("sys", "usr", ["Index 9 out of range [0-2]"])

    assert [m["role"] for m in messages] == ["system", "user", "user"]
    assert messages[0]["content"].endswith("sys")
    assert messages[1]["content"] == "usr"
    assert "- Index 9 out of range [0-2]" in messages[2]["content"]

    assert len(client.build_messages("sys", "usr")) == 2


def test_send_uses_chat_completions():
    openai_client = _openai_mock('{"characters": []}')
    client = OpenAICompletionClient("http://localhost", "key", "model", temperature=0.0, top_p=0.95,
                                    async_openai_client=openai_client)

    assert asyncio.run(client.send("sys", "usr")) == '{"characters": []}'
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "model"
    assert kwargs["temperature"] == 0.0
    assert kwargs["top_p"] == 0.95


def test_check_if_llm_is_up(scripted_client):
    assert asyncio.run(check_if_llm_is_up(scripted_client(["ok"]))) == (True, "ok")

    is_up, message = asyncio.run(check_if_llm_is_up(scripted_client([ConnectionError("refused")])))
    assert not is_up
    assert "refused" in message


def test_call_with_retry_sends_validation_errors_back(scripted_client):
    completion = scripted_client(["not json", '{"characters": []}'])
    api = LLMApiClient(completion, retry_delays=[0])

    result = asyncio.run(api.call_with_retry(PROMPT, validate_extract_response, pass_type="extract"))

    assert result == '{"characters": []}'
    assert len(completion.calls) == 2
    assert completion.calls[0]["previous_errors"] == []
    assert completion.calls[1]["previous_errors"][0].startswith("Invalid JSON")


def test_call_with_retry_accumulates_errors(scripted_client):
    completion = scripted_client(["first", "second", "ok"])

    def validate(response):
        if response == "ok":
            return ValidationResult(valid=True)
        return ValidationResult(valid=False, errors=[f"bad {response}"])

    api = LLMApiClient(completion, retry_delays=[0])
    assert asyncio.run(api.call_with_retry(PROMPT, validate)) == "ok"
    assert completion.calls[1]["previous_errors"] == ["bad first"]
    assert completion.calls[2]["previous_errors"] == ["bad first", "bad second"]


def test_call_with_retry_retries_transport_errors(scripted_client):
    completion = scripted_client([TimeoutError("timed out"), "", '{"characters": []}'])
    retries = []
    api = LLMApiClient(completion, retry_delays=[0])

    result = asyncio.run(api.call_with_retry(
        PROMPT,
        validate_extract_response,
        on_retry=lambda attempt, delay, errors: retries.append((attempt, errors)),
    ))

    assert result == '{"characters": []}'
    assert len(completion.calls) == 3
    assert retries == [(1, []), (2, [])]


def test_call_with_retry_cancelled_before_start(scripted_client):
    completion = scripted_client()
    token = CancellationToken()
    token.cancel()
    api = LLMApiClient(completion, retry_delays=[0])

    with pytest.raises(OperationCancelledError):
        asyncio.run(api.call_with_retry(PROMPT, validate_extract_response, cancel_token=token))
    assert completion.calls == []


def test_call_with_retry_cancelled_during_backoff(scripted_client):
    completion = scripted_client(default="not json")
    token = CancellationToken()
    api = LLMApiClient(completion, retry_delays=[60])

    async def run():
        call = asyncio.ensure_future(api.call_with_retry(PROMPT, validate_extract_response, cancel_token=token))
        await asyncio.sleep(0.2)
        token.cancel()
        return await asyncio.wait_for(call, timeout=5)

    with pytest.raises(OperationCancelledError):
        asyncio.run(run())
    assert len(completion.calls) == 1


def test_call_with_retry_cancelled_during_request():
    token = CancellationToken()

    class SlowClient:
        async def send(self, system_prompt, user_prompt, previous_errors=None):
            await asyncio.sleep(60)
            return '{"characters": []}'

    api = LLMApiClient(SlowClient(), retry_delays=[0])

    async def run():
        call = asyncio.ensure_future(api.call_with_retry(PROMPT, validate_extract_response, cancel_token=token))
        await asyncio.sleep(0.2)
        token.cancel()
        return await asyncio.wait_for(call, timeout=5)

    with pytest.raises(OperationCancelledError):
        asyncio.run(run())


def test_call_with_retry_accepts_answer_after_prose_with_braces(scripted_client):
    completion = scripted_client(['I found {2} speakers:\n{"characters": []}'])
    api = LLMApiClient(completion, retry_delays=[0])

    assert asyncio.run(api.call_with_retry(PROMPT, validate_extract_response)) == '{"characters": []}'
    assert len(completion.calls) == 1
