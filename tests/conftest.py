"""Shared fixtures for speaker attribution tests."""

import pytest

from utils.character_utils import Character, TextBlock


class UnexpectedCompletionCall(BaseException):
    """Escapes the retry loop, which only retries ``Exception``."""


class ScriptedCompletionClient:
    """Fake text-completion collaborator that replays scripted replies and records every call.

    Each scripted reply is a string, an exception to raise, or a callable
    ``(system, user, previous_errors) -> str``.
    """

    def __init__(self, replies=None, default=None):
        self.replies = list(replies or [])
        self.default = default
        self.calls = []

    async def send(self, system_prompt, user_prompt, previous_errors=None):
        self.calls.append({
            "system": system_prompt,
            "user": user_prompt,
            "previous_errors": list(previous_errors or []),
        })
        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            raise UnexpectedCompletionCall("Unexpected completion call")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(system_prompt, user_prompt, previous_errors)
        return reply


@pytest.fixture
def scripted_client():
    return ScriptedCompletionClient


@pytest.fixture
def john_and_mary():
    return [
        Character(canonical_name="John", variations=["John"], gender="male"),
        Character(canonical_name="Mary", variations=["Mary"], gender="female"),
    ]


@pytest.fixture
def greeting_block():
    return TextBlock(
        sentences=["John smiled.", "\"Hello!\"", "\"Hi,\" Mary replied."],
        sentence_start_index=0,
    )
