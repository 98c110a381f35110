"""Shared fakes for the gate tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from bleedguard_proxy.gate import PromptAnswer
from bleedguard_proxy.inspector import ReputationClient

CHECK_URL = "http://check.test/bleed"


class FakeRequest:
    """GatedRequest that records every call made on it."""

    def __init__(self, host: str, scheme: str = "https", route: str | None = None):
        self.scheme = scheme
        self.host = host
        self.route = route
        self.calls: list[str] = []
        self.cancel_reason: str | None = None

    def suspend(self) -> None:
        self.calls.append("suspend")

    def resume(self) -> None:
        self.calls.append("resume")

    def cancel(self, reason: str | None = None) -> None:
        self.calls.append("cancel")
        self.cancel_reason = reason


class ScriptedPrompt:
    """UserPrompt that hands out prepared answers in order."""

    def __init__(self, *answers: PromptAnswer):
        self.answers = list(answers)
        self.asked: list[str] = []

    async def confirm(self, host: str) -> PromptAnswer:
        self.asked.append(host)
        return self.answers.pop(0)


class SilentPrompt:
    """UserPrompt nobody ever answers."""

    def __init__(self):
        self.asked: list[str] = []

    async def confirm(self, host: str) -> PromptAnswer:
        self.asked.append(host)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


def service(responses: dict, seen: list | None = None) -> httpx.MockTransport:
    """Check service stub: host -> httpx.Response, bytes/dict body, or exception to raise."""

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.path.rsplit("/", 1)[-1]
        if seen is not None:
            seen.append(request)
        answer = responses[host]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        if isinstance(answer, dict):
            return httpx.Response(200, json=answer)
        return httpx.Response(200, content=answer)

    return httpx.MockTransport(handler)


def make_client(responses: dict, seen: list | None = None, **kwargs) -> ReputationClient:
    kwargs.setdefault("timeout_s", 2.0)
    kwargs.setdefault("strict", False)
    return ReputationClient(url=CHECK_URL, transport=service(responses, seen), **kwargs)


@pytest.fixture
def responses() -> dict:
    return {
        "good.example": {"code": 1},
        "bad.example": {"code": 0},
        "flaky.example": httpx.ConnectError("connection refused"),
    }
