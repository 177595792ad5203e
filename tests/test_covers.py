import asyncio
import logging

import aiohttp
import pytest

import covers


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        pass

    async def json(self):
        return self.payload


class FakeSession:
    """Stands in for aiohttp.ClientSession; ``outcome`` is a payload or an exception to raise."""

    calls = []

    def __init__(self, outcome, **kwargs):
        self.outcome = outcome

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url, params=None):
        FakeSession.calls.append((url, params))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return FakeResponse(self.outcome)


@pytest.fixture
def openlibrary(monkeypatch):
    def install(outcome):
        FakeSession.calls = []
        monkeypatch.setattr("covers.aiohttp.ClientSession", lambda **kwargs: FakeSession(outcome, **kwargs))
        return FakeSession.calls
    return install


def test_first_doc_with_a_cover_wins(openlibrary):
    calls = openlibrary({"docs": [{"key": "/works/1", "title": "Dune"}, {"cover_i": 42}, {"cover_i": 7}]})

    url = asyncio.run(covers.find_cover_image("Dune"))

    assert url == "https://covers.openlibrary.org/b/id/42-L.jpg"
    assert calls[0][0] == covers.SEARCH_URL
    assert calls[0][1]["q"] == "Dune"


def test_no_cover_returns_none(openlibrary, caplog):
    openlibrary({"docs": [{"key": "/works/1", "title": "Obscure"}]})
    with caplog.at_level(logging.INFO, logger="covers"):
        assert asyncio.run(covers.find_cover_image("Obscure")) is None
    assert "No cover image found" in caplog.text


def test_empty_response_returns_none(openlibrary):
    openlibrary({})
    assert asyncio.run(covers.find_cover_image("Nothing")) is None


@pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
def test_lookup_failures_are_logged_and_ignored(openlibrary, caplog, error):
    openlibrary(error)
    with caplog.at_level(logging.WARNING, logger="covers"):
        assert asyncio.run(covers.find_cover_image("Dune")) is None
    assert "Cover lookup failed" in caplog.text
