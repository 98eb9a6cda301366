import threading

import httpx
import pytest

from app.main import build_services, create_app
from settings import Settings


@pytest.fixture
def services(tmp_path, word_lemmatizer, serve_pages, page_html):
    pages = {
        "https://example.com/": page_html('<p>кот дом</p><a href="/a">a</a>', "Главная"),
        "https://example.com/a": page_html("<p>кот</p>", "Кот"),
    }
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        sites=[{"name": "Example", "url": "https://example.com/"}],
    )
    built = build_services(settings, client_factory=serve_pages(pages), lemmatizer=word_lemmatizer)
    yield built
    built.close()


def _client(services):
    app = create_app(services=services)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_statistics_before_indexing(services):
    async with _client(services) as client:
        resp = await client.get("/api/statistics")

    assert resp.status_code == 200
    body = resp.json()
    assert body["result"] is True
    assert body["statistics"]["total"] == {"sites": 1, "pages": 0, "lemmas": 0, "indexing": False}
    [detail] = body["statistics"]["detailed"]
    assert detail["status"] == "WAIT"
    assert detail["url"] == "https://example.com"
    assert "statusTime" in detail


@pytest.mark.asyncio
async def test_index_then_search(services):
    async with _client(services) as client:
        resp = await client.get("/api/startIndexing")
        assert resp.status_code == 200
        assert resp.json() == {"result": True}
        assert services.orchestrator.wait(timeout=30)

        resp = await client.get("/api/search", params={"query": "кот"})
        stats = await client.get("/api/statistics")

    assert resp.status_code == 200
    body = resp.json()
    assert body["result"] is True
    assert body["count"] == 2
    first = body["data"][0]
    assert set(first) == {
        "siteUrl",
        "siteName",
        "path",
        "title",
        "snippet",
        "relativeRelevance",
        "matchedWordCount",
    }
    assert "<b>кот</b>" in first["snippet"]
    detail = stats.json()["statistics"]["detailed"][0]
    assert detail["status"] == "INDEXED"
    assert detail["pages"] == 2


@pytest.mark.asyncio
async def test_start_twice_conflicts(tmp_path, word_lemmatizer, serve_pages, page_html):
    release = threading.Event()

    def slow(request):
        release.wait(timeout=30)
        return httpx.Response(200, text=page_html("<p>кот</p>"), headers={"content-type": "text/html"})

    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'busy.db'}",
        sites=[{"name": "Example", "url": "https://example.com"}],
    )
    services = build_services(
        settings, client_factory=serve_pages({"https://example.com/": slow}), lemmatizer=word_lemmatizer
    )
    try:
        async with _client(services) as client:
            first = await client.get("/api/startIndexing")
            second = await client.get("/api/startIndexing")
            stopped = await client.get("/api/stopIndexing")
    finally:
        release.set()
        services.orchestrator.wait(timeout=30)
        services.storage.dispose()

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["result"] is False
    assert second.json()["error"]
    assert stopped.status_code == 200


@pytest.mark.asyncio
async def test_stop_when_idle(services):
    async with _client(services) as client:
        resp = await client.get("/api/stopIndexing")

    assert resp.status_code == 405
    assert resp.json()["result"] is False


@pytest.mark.asyncio
async def test_index_page_validates_host(services):
    async with _client(services) as client:
        outside = await client.post("/api/indexPage", params={"url": "https://elsewhere.org/x"})
        inside = await client.post("/api/indexPage", params={"url": "https://example.com/a"})

    assert outside.status_code == 400
    assert outside.json()["result"] is False
    assert inside.status_code == 200
    assert inside.json() == {"result": True}


@pytest.mark.asyncio
async def test_search_rejections(services):
    async with _client(services) as client:
        empty = await client.get("/api/search", params={"query": " "})
        not_ready = await client.get("/api/search", params={"query": "кот"})

    assert empty.status_code == 400
    assert empty.json() == {"result": False, "count": 0, "data": [], "error": "empty query"}
    assert not_ready.status_code == 400
    assert not_ready.json()["error"] == "index not ready"


@pytest.mark.asyncio
async def test_search_failure_is_generic(services, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(services.search_engine, "search", broken)

    async with _client(services) as client:
        resp = await client.get("/api/search", params={"query": "кот"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "search failed"
    assert resp.json()["data"] == []
