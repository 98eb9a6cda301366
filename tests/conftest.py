"""Pytest configuration with basic asyncio support and shared fixtures."""

import asyncio
from collections import Counter

import httpx
import pytest

from knowledge.text import html_to_text
from models import SiteStatus
from storage import Storage


def pytest_configure(config):
    """Register the ``asyncio`` marker for asynchronous tests."""
    config.addinivalue_line(
        "markers", "asyncio: mark async test to run in event loop"
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run functions marked with ``asyncio`` in a new event loop."""
    if pyfuncitem.get_closest_marker("asyncio"):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            funcargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(pyfuncitem.obj(**funcargs))
        finally:
            loop.close()
            asyncio.set_event_loop(None)
        return True


class WordLemmatizer:
    """Deterministic stand-in: every whitespace separated word is its own lemma."""

    def __init__(self):
        self.calls = 0

    def lemmas_from(self, text):
        self.calls += 1
        return dict(Counter(html_to_text(text).lower().split()))

    def lemma_of(self, word):
        return word.strip().lower()


def html_page(body, title=""):
    return f"<html><head><title>{title}</title></head><body>{body}</body></html>"


def mock_client_factory(pages, requests=None):
    """Serve ``pages`` (url -> html or ``httpx.Response``) through MockTransport."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if requests is not None:
            requests.append(url)
        page = pages.get(url)
        if page is None:
            return httpx.Response(404)
        if isinstance(page, httpx.Response):
            return page
        if callable(page):
            return page(request)
        return httpx.Response(200, text=page, headers={"content-type": "text/html; charset=utf-8"})

    transport = httpx.MockTransport(handler)

    def client_factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=transport)

    return client_factory


@pytest.fixture
def storage(tmp_path):
    store = Storage(f"sqlite:///{tmp_path / 'index.db'}")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def word_lemmatizer():
    return WordLemmatizer()


@pytest.fixture
def site(storage):
    return storage.create_site("Example", "https://example.com", SiteStatus.INDEXING)


@pytest.fixture
def serve_pages():
    return mock_client_factory


@pytest.fixture
def page_html():
    return html_page
