#!/usr/bin/env python3
"""
News aggregator command line.

Modes:
  serve             run the RSS proxy (GET /api/proxy/rss, GET /api/health)
  fetch TAB         aggregate one tab once and print the articles as JSON
  watch TAB         keep a tab fresh with the auto-refresh timer
  validate URL      check that a URL serves a usable feed
  discover SITE     find the feed advertised by (or hidden under) a website
  tabs              list the tabs configured in tabs.yaml
"""

import argparse
import asyncio
import json
import sys
import time
from typing import Optional

from aiohttp import ClientSession

from cache import MemoryCacheStore, SQLiteCacheStore
from config import config, get_logger
from models import TabStatus, TabView
from orchestrator import NewsOrchestrator, sources_from_config
from rss_service import RSSService
from scoring import filter_news, sort_news
from server import run_server
from telemetry import init_telemetry
from utils import format_duration
from validator import discover_feed_url, validate_feed

# Module-specific logger
logger = get_logger("main")


def view_to_dict(view: TabView, sort_by: str = "date", language: str = "all", search: str = "") -> dict:
    articles = sort_news(filter_news(view.articles, language=language, search=search), sort_by)
    return {
        "tab": view.tab_id,
        "status": view.status.value,
        "from_cache": view.from_cache,
        "articles": [article.to_dict() for article in articles],
        "new_ids": sorted(view.new_ids),
        "failures": [failure.to_dict() for failure in view.failures],
        "empty_sources": list(view.empty_sources),
    }


class NewsRunner:
    """Wires the per-source client, cache and orchestrator for CLI runs."""

    def __init__(self, use_disk_cache: bool = True, proxy_base_url: Optional[str] = None) -> None:
        self.use_disk_cache = use_disk_cache
        self.proxy_base_url = proxy_base_url

    async def run_fetch(self, tab_id: str, use_cache: bool = True, sort_by: str = "date",
                        language: str = "all", search: str = "") -> bool:
        sources = sources_from_config(tab_id)
        if not sources:
            logger.error(f"❌ Unknown tab or no sources configured: {tab_id}")
            return False

        logger.info(f"📡 Fetching tab {tab_id} ({len(sources)} sources)")
        start_time = time.time()
        cache = SQLiteCacheStore() if self.use_disk_cache else MemoryCacheStore()
        async with ClientSession() as session:
            service = RSSService(session, proxy_base_url=self.proxy_base_url)
            orchestrator = NewsOrchestrator(service.fetch_source, cache)
            try:
                view = await orchestrator.fetch_news(tab_id, sources, use_cache=use_cache)
                # A cache hit is revalidated in the background; wait for it
                view = await orchestrator.wait_for_tab(tab_id) or view
            finally:
                await orchestrator.close()
                await service.close()
                await cache.close()

        print(json.dumps(view_to_dict(view, sort_by, language, search), ensure_ascii=False, indent=2))
        logger.info(f"🎉 Tab {tab_id} done in {format_duration(time.time() - start_time)}")
        return view.status is not TabStatus.FAILED

    async def run_watch(self, tab_id: str, interval_minutes: Optional[float] = None) -> bool:
        sources = sources_from_config(tab_id)
        if not sources:
            logger.error(f"❌ Unknown tab or no sources configured: {tab_id}")
            return False

        cache = SQLiteCacheStore() if self.use_disk_cache else MemoryCacheStore()
        async with ClientSession() as session:
            service = RSSService(session, proxy_base_url=self.proxy_base_url)
            orchestrator = NewsOrchestrator(service.fetch_source, cache)

            def on_view(view: TabView) -> None:
                if view.status is TabStatus.FETCHING:
                    return
                logger.info(
                    f"📰 {view.tab_id}: {len(view.articles)} articles "
                    f"({len(view.new_ids)} new, {len(view.failures)} failed, cached={view.from_cache})"
                )
                for article in view.articles:
                    if article.id in view.new_ids:
                        logger.info(f"   🆕 [{article.source}] {article.title}")

            orchestrator.subscribe(on_view)
            try:
                await orchestrator.activate_tab(tab_id, sources)
                interval = interval_minutes * 60 if interval_minutes else None
                await orchestrator.run_auto_refresh(interval)
            finally:
                await orchestrator.close()
                await service.close()
                await cache.close()
        return True

    async def run_validate(self, url: str) -> bool:
        async with ClientSession() as session:
            result = await validate_feed(url, session)
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        if result.valid:
            logger.info(f"✅ {url} is a valid feed")
        else:
            logger.warning(f"⚠️ {url} is not a usable feed")
        return result.valid

    async def run_discover(self, site_url: str) -> bool:
        async with ClientSession() as session:
            feed_url = await discover_feed_url(site_url, session)
        if feed_url:
            print(feed_url)
            return True
        logger.warning(f"⚠️ No feed found for {site_url}")
        return False


def print_tabs() -> None:
    """Print configured tabs and their sources."""
    if not config.TABS:
        print(f"No tabs configured (looked in {config.TABS_CONFIG_PATH})")
        return
    for tab_id, tab in config.TABS.items():
        print(f"\n📑 {tab_id}: {tab['name']} ({len(tab['sources'])} sources)")
        for source in tab["sources"]:
            weight = config.SOURCE_WEIGHTS.get(source["name"], config.DEFAULT_SOURCE_WEIGHT)
            print(f"   📡 {source['name']} [{source.get('language', 'en')}, weight {weight}] {source['url']}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description="News Aggregator feed pipeline")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    serve = subparsers.add_parser("serve", help="Run the RSS proxy server")
    serve.add_argument("--host", type=str, help="Bind address (default: HOST)")
    serve.add_argument("--port", type=int, help="Port (default: PORT)")

    fetch = subparsers.add_parser("fetch", help="Aggregate one tab and print JSON")
    fetch.add_argument("tab", help="Tab id from tabs.yaml")
    fetch.add_argument("--no-cache", action="store_true", help="Ignore the cached snapshot")
    fetch.add_argument("--sort", choices=["date", "popularity"], default="date", help="Sort order")
    fetch.add_argument("--language", default="all", help="Only articles in this language")
    fetch.add_argument("--search", default="", help="Free-text filter")

    watch = subparsers.add_parser("watch", help="Keep a tab refreshed")
    watch.add_argument("tab", help="Tab id from tabs.yaml")
    watch.add_argument("--interval", type=float, help="Refresh interval in minutes (default: AUTO_REFRESH_MINUTES)")

    validate = subparsers.add_parser("validate", help="Validate a feed URL")
    validate.add_argument("url")

    discover = subparsers.add_parser("discover", help="Discover a website's feed")
    discover.add_argument("site")

    subparsers.add_parser("tabs", help="List configured tabs")

    parser.add_argument("--memory-cache", action="store_true", help="Keep snapshots in memory only")
    parser.add_argument("--proxy", type=str, help="Fetch through a running proxy at this base URL")

    args = parser.parse_args()
    runner = NewsRunner(use_disk_cache=not args.memory_cache, proxy_base_url=args.proxy)

    try:
        if args.mode == "serve":
            run_server(args.host, args.port)

        elif args.mode == "tabs":
            print_tabs()

        else:
            init_telemetry("news-aggregator-cli")
            if args.mode == "fetch":
                success = asyncio.run(runner.run_fetch(
                    args.tab, use_cache=not args.no_cache, sort_by=args.sort,
                    language=args.language, search=args.search,
                ))
            elif args.mode == "watch":
                success = asyncio.run(runner.run_watch(args.tab, args.interval))
            elif args.mode == "validate":
                success = asyncio.run(runner.run_validate(args.url))
            else:
                success = asyncio.run(runner.run_discover(args.site))
            sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
