import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from cache import MemoryCacheStore
from config import config
from models import Article, CachedSnapshot, FailureInfo, Source, SourceResult, TabFetchState, TabStatus
from orchestrator import FailureNotifier, InvalidTransition, NewsOrchestrator
from rss_service import RSSService
from scoring import ScoringTables
from fakes import recent_rss

TABLES = ScoringTables()


def source(name):
    return Source(name=name, url=f"https://{name.lower()}.example.com/rss")


def article(article_id, source_name, hours_ago=1.0):
    return Article(
        id=article_id,
        title=f"Story {article_id}",
        link=f"https://example.com/{article_id}",
        description="",
        source=source_name,
        published_at=datetime.now(timezone.utc) - timedelta(hours=hours_ago),
    )


class FakeFetcher:
    """Per-source outcomes keyed by source name: a list of articles, a FailureInfo or an exception."""

    def __init__(self, outcomes, gate=None):
        self.outcomes = outcomes
        self.gate = gate
        self.calls = []

    async def __call__(self, src):
        self.calls.append(src.name)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes[src.name]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FailureInfo):
            return SourceResult(source=src, error=outcome)
        return SourceResult(source=src, articles=tuple(outcome))


class RecordingNotifier(FailureNotifier):
    def __init__(self):
        self.notices = []
        super().__init__(callback=lambda tab_id, failures: self.notices.append((tab_id, failures)), debounce_seconds=0)


def make_orchestrator(fetcher, cache=None, notifier=None):
    return NewsOrchestrator(
        fetcher,
        cache or MemoryCacheStore(),
        notifier=notifier or RecordingNotifier(),
        tables=TABLES,
        highlight_seconds=0,
    )


@pytest.mark.asyncio
async def test_end_to_end_against_local_origin():
    async def good_feed(request):
        return web.Response(body=recent_rss("One", "Two", "Three"), content_type="application/rss+xml")

    async def missing_feed(request):
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/good.xml", good_feed)
    app.router.add_get("/missing.xml", missing_feed)

    async with TestServer(app) as origin, ClientSession() as session:
        sources = (
            Source(name="Good", url=str(origin.make_url("/good.xml"))),
            Source(name="Gone", url=str(origin.make_url("/missing.xml"))),
        )
        service = RSSService(session, proxy_base_url="", development=True)
        notifier = RecordingNotifier()
        cache = MemoryCacheStore()
        orchestrator = make_orchestrator(service.fetch_source, cache, notifier)
        try:
            view = await orchestrator.fetch_news("local", sources, use_cache=False)
        finally:
            await orchestrator.close()
            await service.close()

    assert view.status is TabStatus.SUCCEEDED
    assert [a.title for a in view.articles] == ["One", "Two", "Three"]
    assert len(view.failures) == 1
    assert view.failures[0].name == "Gone"
    assert view.failures[0].status == 404
    assert notifier.notices == [("local", view.failures)]
    assert (await cache.get("local")).article_ids == frozenset(a.id for a in view.articles)
    assert orchestrator.get_state("local").status is TabStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_fetch():
    gate = asyncio.Event()
    fetcher = FakeFetcher({"CBC": [article("a", "CBC")]}, gate=gate)
    orchestrator = make_orchestrator(fetcher)

    first = asyncio.create_task(orchestrator.fetch_news("montreal", [source("CBC")]))
    await asyncio.sleep(0)
    second = asyncio.create_task(orchestrator.fetch_news("montreal", [source("CBC")]))
    await asyncio.sleep(0)
    assert orchestrator.get_state("montreal").in_flight
    gate.set()

    views = await asyncio.gather(first, second)

    assert fetcher.calls == ["CBC"]
    assert views[0] is views[1]
    assert orchestrator.get_state("montreal").in_flight is False


@pytest.mark.asyncio
async def test_stale_fetch_is_not_applied_or_cached():
    gate = asyncio.Event()
    fetcher = FakeFetcher({"CBC": [article("old-tab", "CBC")], "BBC": [article("new-tab", "BBC")]}, gate=gate)
    cache = MemoryCacheStore()
    orchestrator = make_orchestrator(fetcher, cache)

    pending = asyncio.create_task(orchestrator.fetch_news("montreal", [source("CBC")]))
    await asyncio.sleep(0)
    orchestrator.set_active_tab("world")
    gate.set()
    stale_view = await pending

    assert [a.id for a in stale_view.articles] == ["old-tab"]
    assert orchestrator.current_view is not stale_view
    assert orchestrator.current_view.articles == ()
    assert await cache.get("montreal") is None
    assert orchestrator.get_state("montreal").status is TabStatus.IDLE

    view = await orchestrator.fetch_news("world", [source("BBC")])
    assert orchestrator.current_view is view
    assert [a.id for a in view.articles] == ["new-tab"]


@pytest.mark.asyncio
async def test_cached_snapshot_is_served_then_revalidated():
    cache = MemoryCacheStore()
    cached_article = article("cached", "CBC", hours_ago=3)
    await cache.set("montreal", CachedSnapshot("montreal", (cached_article,), frozenset({"cached"}), 1.0))
    fetcher = FakeFetcher({"CBC": [article("fresh", "CBC"), cached_article]})
    orchestrator = make_orchestrator(fetcher, cache)
    seen = []
    orchestrator.subscribe(seen.append)

    view = await orchestrator.fetch_news("montreal", [source("CBC")])

    assert view.from_cache
    assert [a.id for a in view.articles] == ["cached"]

    refreshed = await orchestrator.wait_for_tab("montreal")

    assert refreshed.from_cache is False
    assert [a.id for a in refreshed.articles] == ["fresh", "cached"]
    assert refreshed.new_ids == frozenset({"fresh"})
    assert [v.from_cache for v in seen] == [True, False]
    assert (await cache.get("montreal")).article_ids == frozenset({"fresh", "cached"})


@pytest.mark.asyncio
async def test_cached_view_drops_articles_from_removed_sources():
    cache = MemoryCacheStore()
    snapshot = CachedSnapshot(
        "montreal",
        (article("a", "CBC"), article("b", "Gazette")),
        frozenset({"a", "b"}),
        1.0,
    )
    await cache.set("montreal", snapshot)
    orchestrator = make_orchestrator(FakeFetcher({"CBC": [article("a", "CBC")]}), cache)

    view = await orchestrator.fetch_news("montreal", [source("CBC")])
    await orchestrator.close()

    assert [a.id for a in view.articles] == ["a"]


@pytest.mark.asyncio
async def test_changed_sources_force_a_fetch():
    cache = MemoryCacheStore()
    fetcher = FakeFetcher({"CBC": [article("a", "CBC")], "Gazette": [article("g", "Gazette")]})
    orchestrator = make_orchestrator(fetcher, cache)

    await orchestrator.fetch_news("montreal", [source("CBC")])
    view = await orchestrator.fetch_news("montreal", [source("CBC"), source("Gazette")])

    assert view.from_cache is False
    assert {a.id for a in view.articles} == {"a", "g"}
    assert view.new_ids == frozenset({"a", "g"})
    assert fetcher.calls == ["CBC", "CBC", "Gazette"]


@pytest.mark.asyncio
async def test_all_sources_failed_keeps_cached_articles():
    cache = MemoryCacheStore()
    snapshot = CachedSnapshot("montreal", (article("kept", "CBC"),), frozenset({"kept"}), 1.0)
    await cache.set("montreal", snapshot)
    notifier = RecordingNotifier()
    orchestrator = make_orchestrator(FakeFetcher({"CBC": FailureInfo("CBC", 503, "HTTP 503")}), cache, notifier)

    view = await orchestrator.fetch_news("montreal", [source("CBC")], use_cache=False)

    assert view.status is TabStatus.FAILED
    assert [a.id for a in view.articles] == ["kept"]
    assert view.failures == (FailureInfo("CBC", 503, "HTTP 503"),)
    assert await cache.get("montreal") is snapshot
    assert len(notifier.notices) == 1


@pytest.mark.asyncio
async def test_cached_view_is_served_after_a_failed_fetch():
    cache = MemoryCacheStore()
    snapshot = CachedSnapshot("montreal", (article("kept", "CBC"),), frozenset({"kept"}), 1.0)
    await cache.set("montreal", snapshot)
    outcomes = {"CBC": FailureInfo("CBC", 503, "HTTP 503")}
    orchestrator = make_orchestrator(FakeFetcher(outcomes), cache)

    failed = await orchestrator.fetch_news("montreal", [source("CBC")], use_cache=False)
    assert failed.status is TabStatus.FAILED

    outcomes["CBC"] = [article("fresh", "CBC", hours_ago=0.5)]
    view = await orchestrator.fetch_news("montreal", [source("CBC")])

    assert view.status is TabStatus.SUCCEEDED
    assert view.from_cache
    assert [a.id for a in view.articles] == ["kept"]

    refreshed = await orchestrator.wait_for_tab("montreal")
    assert [a.id for a in refreshed.articles] == ["fresh"]
    assert orchestrator.get_state("montreal").status is TabStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_unexpected_error_falls_back_to_cache():
    cache = MemoryCacheStore()
    snapshot = CachedSnapshot("montreal", (article("kept", "CBC"),), frozenset({"kept"}), 1.0)
    await cache.set("montreal", snapshot)
    orchestrator = make_orchestrator(FakeFetcher({"CBC": KeyError("bug")}), cache)

    view = await orchestrator.fetch_news("montreal", [source("CBC")], use_cache=False)

    assert view.status is TabStatus.FAILED
    assert [a.id for a in view.articles] == ["kept"]
    assert orchestrator.get_state("montreal").status is TabStatus.FAILED


@pytest.mark.asyncio
async def test_timeouts_raised_by_a_source_become_failures():
    fetcher = FakeFetcher({"CBC": [article("a", "CBC")], "Slow": TimeoutError()})
    orchestrator = make_orchestrator(fetcher)

    view = await orchestrator.fetch_news("montreal", [source("CBC"), source("Slow")], use_cache=False)

    assert [a.id for a in view.articles] == ["a"]
    assert view.failures == (FailureInfo("Slow", 504, "Request timeout"),)


@pytest.mark.asyncio
async def test_new_articles_are_highlighted_after_first_load():
    outcomes = {"CBC": [article("a", "CBC")]}
    orchestrator = make_orchestrator(FakeFetcher(outcomes))
    orchestrator.highlight_seconds = 60

    await orchestrator.fetch_news("montreal", [source("CBC")], use_cache=False)
    assert orchestrator.highlighted_ids == frozenset()

    outcomes["CBC"] = [article("b", "CBC", hours_ago=0.5), article("a", "CBC")]
    view = await orchestrator.refresh_news("montreal")

    assert view.new_ids == frozenset({"b"})
    assert orchestrator.highlighted_ids == frozenset({"b"})

    orchestrator.set_active_tab("world")
    assert orchestrator.highlighted_ids == frozenset()
    await orchestrator.close()


def test_invalid_transition_is_rejected():
    orchestrator = make_orchestrator(FakeFetcher({}))
    orchestrator._states["montreal"] = TabFetchState(tab_id="montreal", sources=())

    with pytest.raises(InvalidTransition):
        orchestrator._transition("montreal", TabStatus.FAILED)


def test_failed_tab_may_settle_on_cached_data():
    orchestrator = make_orchestrator(FakeFetcher({}))
    orchestrator._states["montreal"] = TabFetchState(tab_id="montreal", sources=(), status=TabStatus.FAILED)

    assert orchestrator._transition("montreal", TabStatus.SUCCEEDED).status is TabStatus.SUCCEEDED


def test_failure_notifier_debounces():
    now = [100.0]
    notices = []
    notifier = FailureNotifier(lambda tab_id, failures: notices.append(tab_id), debounce_seconds=5, clock=lambda: now[0])
    failures = [FailureInfo("CBC", 404, "HTTP 404")]

    assert notifier.notify("montreal", failures)
    now[0] = 103.0
    assert not notifier.notify("montreal", failures)
    now[0] = 106.0
    assert notifier.notify("world", failures)
    assert not notifier.notify("world", [])
    assert notices == ["montreal", "world"]


def test_default_debounce_comes_from_config(monkeypatch):
    monkeypatch.setattr(config, "FAILURE_NOTICE_DEBOUNCE_SECONDS", 42)

    assert FailureNotifier().debounce_seconds == 42
