"""Shared fixtures for the harvesting test suite.

The completion service is never contacted: clients talk to an
``httpx.MockTransport`` and sleep through a recorder instead of the clock.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Callable

import httpx
import pytest

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")


def gemini_body(text: str) -> dict:
    """A generateContent response carrying *text* as the model output."""
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def courses_body(*names: str) -> dict:
    records = [{"CourseName": name, "CourseCode": f"C{idx}"} for idx, name in enumerate(names, 1)]
    return gemini_body(json.dumps(records))


class FakeService:
    """Scripted completion service: pops one response per request.

    Each script item is either an ``httpx.Response`` or a callable
    ``(request) -> httpx.Response``. Once the script runs out, the last item
    keeps being replayed.
    """

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if callable(item):
            return item(request)
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def prompts(self) -> list[str]:
        return [json.loads(r.content)["contents"][0]["parts"][0]["text"] for r in self.requests]


@pytest.fixture
def harvest_config():
    from course_harvester import HarvestConfig

    return HarvestConfig(api_key="test-key", base_url="https://llm.test/v1beta")


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_client(harvest_config, sleeps) -> Callable:
    """Factory: ``make_client(handler)`` -> ExtractionClient over a mock transport."""
    from course_harvester import ExtractionClient

    clients = []

    def _make(handler, **config_overrides):
        from dataclasses import replace

        cfg = replace(harvest_config, **config_overrides)
        http = httpx.Client(transport=httpx.MockTransport(handler))
        client = ExtractionClient(cfg, http_client=http, sleep=sleeps.append)
        clients.append(http)
        return client

    yield _make
    for http in clients:
        http.close()


@pytest.fixture
def memory_cache():
    from course_harvester import IncrementalCache

    return IncrementalCache()


@pytest.fixture
def catalog_pages() -> list[str]:
    """Ten short catalogue pages."""
    return [f"PAGE {n}\nCourse listing for page {n}." for n in range(1, 11)]
