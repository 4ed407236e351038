"""
Audiobook Creator
Copyright (C) 2025 Prakhar Sharma

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import re
import json
import os
import time
import asyncio
import threading
import traceback
from typing import Callable, List, Optional, Literal
from openai import AsyncOpenAI
from dotenv import load_dotenv
from config.constants import DEFAULT_LLM_RETRY_DELAYS, LLM_RETRY_DELAYS, LLM_TEMPERATURE, LLM_TOP_P, LLM_REQUEST_TIMEOUT
from utils.character_utils import ValidationResult
from utils.prompts import LLMPrompt

load_dotenv()

NO_THINK_MODE = os.environ.get("NO_THINK_MODE", "true")

PassType = Literal["extract", "merge", "assign"]

# How often a waiting task looks at the cancellation flag, in seconds
CANCELLATION_POLL_INTERVAL = 0.1

THINKING_BLOCK_PATTERN = re.compile(r"<(think|thinking|scratchpad)>.*?</\1>", re.DOTALL | re.IGNORECASE)
UNOPENED_THINKING_PATTERN = re.compile(r"^.*?</(think|thinking|scratchpad)>", re.DOTALL | re.IGNORECASE)
CODE_FENCE_PATTERN = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*$", re.MULTILINE)
ASSIGNMENT_ATTEMPT_PATTERN = re.compile(r"^\[?\d+\]?\s*:")


class OperationCancelledError(Exception):
    """Raised when a pipeline run is cancelled. Never retried."""

    def __init__(self, message="Operation cancelled"):
        super().__init__(message)


class CancellationToken:
    """
    Cooperative cancellation flag shared by every call in one pipeline run.
    Safe to set from another thread (e.g. a UI callback).
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelledError()

    def reset(self):
        self._event.clear()


def check_if_have_to_include_no_think_token():
    if NO_THINK_MODE == True or NO_THINK_MODE == "true":
        return "/no_think"
    else:
        return ""


def get_retry_delay(attempt: int, retry_delays: Optional[List[float]] = None) -> float:
    """
    Delay before retry number `attempt` (0-based). Past the end of the sequence the last delay repeats.
    An empty sequence falls back to the configured one.
    """
    delays = retry_delays or LLM_RETRY_DELAYS or DEFAULT_LLM_RETRY_DELAYS
    return delays[min(attempt, len(delays) - 1)]


def clean_thinking_tags(text: str) -> str:
    """Remove <think>/<scratchpad> reasoning blocks, including one whose opening tag was cut off."""
    text = THINKING_BLOCK_PATTERN.sub("", text)
    text = UNOPENED_THINKING_PATTERN.sub("", text)
    return text.strip()


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_PATTERN.sub("", text).strip()


def extract_json(text: str) -> str:
    """
    Pull the outermost JSON object out of a model reply.

    Reasoning blocks and markdown fences are stripped first. The first `{` that starts a decodable JSON
    object wins, so prose like "I found {2} speakers" before the answer is skipped. If nothing decodes,
    the first balanced `{...}` span (or the cleaned text) is returned so that the JSON parser reports
    the problem.
    """
    cleaned = strip_code_fences(clean_thinking_tags(text))
    decoder = json.JSONDecoder()
    position = cleaned.find("{")
    while position != -1:
        try:
            parsed, end = decoder.raw_decode(cleaned, position)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return cleaned[position:end]
        position = cleaned.find("{", position + 1)

    start = cleaned.find("{")
    if start == -1:
        return cleaned

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(cleaned)):
        ch = cleaned[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start:i + 1]

    return cleaned[start:]


def extract_assignment_lines(text: str) -> str:
    """
    Pull the `index:code` payload out of a model reply.

    Every line from the first to the last one that looks like an assignment attempt is kept, so
    malformed lines in between still reach the validator. A reply with no such line is an empty
    payload, which means the whole block is narration.
    """
    cleaned = strip_code_fences(clean_thinking_tags(text))
    lines = [line.strip() for line in cleaned.splitlines()]
    attempt_positions = [i for i, line in enumerate(lines) if ASSIGNMENT_ATTEMPT_PATTERN.match(line)]
    if not attempt_positions:
        return ""
    payload = lines[attempt_positions[0]:attempt_positions[-1] + 1]
    return "\n".join(line for line in payload if line)


class OpenAICompletionClient:
    """
    Text-completion collaborator backed by an OpenAI-compatible chat endpoint.
    Retries are handled by LLMApiClient, so the SDK's own retries are disabled.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        temperature: float = LLM_TEMPERATURE,
        top_p: float = LLM_TOP_P,
        timeout: float = LLM_REQUEST_TIMEOUT,
        async_openai_client: Optional[AsyncOpenAI] = None,
    ):
        self.model_name = model_name
        self.temperature = temperature
        self.top_p = top_p
        self.client = async_openai_client or AsyncOpenAI(
            base_url=base_url, api_key=api_key, max_retries=0, timeout=timeout
        )

    def build_messages(self, system_prompt: str, user_prompt: str, previous_errors: Optional[List[str]] = None):
        no_think_token = check_if_have_to_include_no_think_token()
        system_content = f"{no_think_token}\n{system_prompt}" if no_think_token else system_prompt
        messages = [
            {"role": "system", "content": system_content},
            {"role": "user", "content": user_prompt},
        ]
        if previous_errors:
            error_list = "\n".join(f"- {e}" for e in previous_errors)
            messages.append({
                "role": "user",
                "content": f"Your previous response had these errors:\n{error_list}\n\nPlease fix them and answer again in the required format.",
            })
        return messages

    async def send(self, system_prompt: str, user_prompt: str, previous_errors: Optional[List[str]] = None) -> str:
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=self.build_messages(system_prompt, user_prompt, previous_errors),
            temperature=self.temperature,
            top_p=self.top_p,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


async def check_if_llm_is_up(completion_client):
    try:
        response = await completion_client.send(
            "You are a health check endpoint.",
            "Hello, this is a health test. Reply with any word if you're working.",
        )
        return True, response.strip()
    except Exception as e:
        traceback.print_exc()
        return False, "Your configured LLM is not working. Please check if the .env file is correctly set up. Error: " + str(e)


class LLMApiClient:
    """
    Validate-and-retry wrapper around a text-completion collaborator.

    A call is retried on transport errors and on validation failures, forever, with the delays from
    the retry sequence. Validation errors are accumulated and sent back with the next attempt so the
    model can correct itself. Only cancellation ends a call without a result.
    """

    def __init__(self, completion_client, retry_delays: Optional[List[float]] = None):
        self.completion_client = completion_client
        self.retry_delays = list(retry_delays or LLM_RETRY_DELAYS)
        self._logged_passes = set()

    def reset_logging(self):
        self._logged_passes = set()

    async def _wait_cancellable(self, awaitable, cancel_token: Optional[CancellationToken]):
        """Await `awaitable`, abandoning it as soon as the cancellation flag is set."""
        if cancel_token is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=CANCELLATION_POLL_INTERVAL)
                if task in done:
                    return task.result()
                cancel_token.raise_if_cancelled()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _sleep(self, delay: float, cancel_token: Optional[CancellationToken]):
        if cancel_token is None:
            await asyncio.sleep(delay)
            return

        deadline = time.monotonic() + delay
        while True:
            cancel_token.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, CANCELLATION_POLL_INTERVAL))

    def _log_first_exchange(self, pass_type: str, prompt: LLMPrompt, response: str):
        if pass_type in self._logged_passes:
            return
        self._logged_passes.add(pass_type)
        print(f"📝 [{pass_type}] First request: system={len(prompt.system)} chars, user={len(prompt.user)} chars")
        print(f"📝 [{pass_type}] First response: {response[:300]!r}")

    async def call_with_retry(
        self,
        prompt: LLMPrompt,
        validate: Callable[[str], ValidationResult],
        pass_type: PassType = "extract",
        cancel_token: Optional[CancellationToken] = None,
        previous_errors: Optional[List[str]] = None,
        on_retry: Optional[Callable[[int, float, List[str]], None]] = None,
    ) -> str:
        """
        Send `prompt` until `validate` accepts the extracted payload, and return that payload.

        For the assign pass the payload is the block of `index:code` lines, for the other passes it is
        the outermost JSON object of the reply.

        Raises:
            OperationCancelledError: if `cancel_token` is set before or during any attempt or wait.
        """
        previous_errors = list(previous_errors or [])
        attempt = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                raw_response = await self._wait_cancellable(
                    self.completion_client.send(prompt.system, prompt.user, list(previous_errors)),
                    cancel_token,
                )
                self._log_first_exchange(pass_type, prompt, raw_response or "")
                if pass_type != "assign" and not (raw_response or "").strip():
                    raise ValueError("Empty response from API")
            except OperationCancelledError:
                raise
            except Exception as e:
                delay = get_retry_delay(attempt, self.retry_delays)
                attempt += 1
                print(f"⚠️  [{pass_type}] API error on attempt {attempt}: {e}")
                print(f"   Retrying in {delay:.1f} seconds...")
                if on_retry:
                    on_retry(attempt, delay, [])
                await self._sleep(delay, cancel_token)
                continue

            if pass_type == "assign":
                payload = extract_assignment_lines(raw_response or "")
            else:
                payload = extract_json(raw_response)

            validation = validate(payload)
            if validation.valid:
                if attempt > 0:
                    print(f"✅ [{pass_type}] Succeeded after {attempt} retry attempts")
                return payload

            # Keep earlier errors too, so the model doesn't reintroduce a mistake it already fixed
            previous_errors.extend(e for e in validation.errors if e not in previous_errors)
            delay = get_retry_delay(attempt, self.retry_delays)
            attempt += 1
            print(f"⚠️  [{pass_type}] Validation failed on attempt {attempt} ({len(validation.errors)} errors): {validation.errors[:3]}")
            print(f"   Response was: {(raw_response or '')[:300]!r}")
            print(f"   Retrying in {delay:.1f} seconds...")
            if on_retry:
                on_retry(attempt, delay, list(previous_errors))
            await self._sleep(delay, cancel_token)
