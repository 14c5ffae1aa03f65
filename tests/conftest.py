"""Pytest fixtures and Playwright fakes for the partsbooking scraper tests."""

import asyncio

import pytest

from pbscraper.models import PriceStore
from pbscraper.task_queue import QueueManager


class FakeRequest:
    def __init__(self, method: str = "GET"):
        self.method = method


class FakeResponse:
    """Stand-in for playwright Response as seen by a 'response' listener."""

    def __init__(self, url, payload=None, status=200, method="GET", content_type="application/json", body_error=None):
        self.url = url
        self.status = status
        self.request = FakeRequest(method)
        self.headers = {"content-type": content_type} if content_type else {}
        self._payload = payload
        self._body_error = body_error

    async def json(self):
        if self._body_error:
            raise self._body_error
        return self._payload


class FakeNavResponse:
    def __init__(self, status=200):
        self.status = status


class FakePage:
    """
    Minimal page: event listeners, goto with scripted outcomes, extra headers.
    goto_results items are a status int, None (no response), an exception, or
    a (status, final_url) tuple.
    """

    def __init__(self, goto_results=None, on_goto=None):
        self.listeners: dict[str, list] = {}
        self.goto_results = list(goto_results or [200])
        self.on_goto = on_goto
        self.goto_calls: list[str] = []
        self.url = "about:blank"
        self.extra_headers: list[dict] = []

    def on(self, event, handler):
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.listeners.get(event, []).remove(handler)

    async def emit(self, event, arg):
        for handler in list(self.listeners.get(event, [])):
            await handler(arg)

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append(url)
        outcome = self.goto_results.pop(0) if len(self.goto_results) > 1 else self.goto_results[0]
        if isinstance(outcome, Exception):
            raise outcome
        final_url = url
        if isinstance(outcome, tuple):
            outcome, final_url = outcome
        self.url = final_url
        if self.on_goto:
            await self.on_goto(self, url)
        return None if outcome is None else FakeNavResponse(outcome)

    async def set_extra_http_headers(self, headers):
        self.extra_headers.append(headers)


class FakeAggregator:
    def __init__(self):
        self.items = []

    async def put(self, quotes, part_number, brand_name):
        self.items.append({"quotes": quotes, "part_number": part_number, "brand_name": brand_name})


@pytest.fixture
def store(tmp_path) -> PriceStore:
    """Fresh SQLite file per test."""
    s = PriceStore(tmp_path / "prices.sqlite")
    s.init()
    return s


@pytest.fixture
def queue(tmp_path) -> QueueManager:
    return QueueManager(tmp_path / "queue_state.json")


@pytest.fixture
def no_sleep(monkeypatch):
    """Make jittered backoffs and pauses instant."""
    real_sleep = asyncio.sleep

    async def instant(delay, *args, **kwargs):
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", instant)
