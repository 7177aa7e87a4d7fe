#!/usr/bin/env python3
"""
Per-tab fetch orchestration.

The orchestrator owns, for every tab, a TabFetchState plus the last snapshot
shown to the presentation layer. It decides when to serve the cache, when to
fetch, and whether a finished fetch may still be applied:

- a cached snapshot is shown immediately and silently revalidated;
- only one fetch per tab is ever in flight, later callers join it;
- a fetch started for a tab that is no longer active is computed but its
  result is neither cached nor shown;
- a changed source list forces a fresh, user-visible fetch.

State, views and snapshots are replaced as whole values, never patched.
"""

from asyncio import Task, TimeoutError, create_task, gather, get_running_loop, shield, sleep
from dataclasses import replace
from time import monotonic, time
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from cache import CacheStore
from config import config, get_logger
from errors import FeedPipelineError, status_for_error
from models import (
    AggregationResult,
    CachedSnapshot,
    FailureInfo,
    Source,
    SourceResult,
    TabFetchState,
    TabStatus,
    TabView,
)
from scoring import ScoringTables, aggregate
from telemetry import trace_span

logger = get_logger("orchestrator")

FetchSource = Callable[[Source], Awaitable[SourceResult]]

VALID_TRANSITIONS = {
    TabStatus.IDLE: {TabStatus.FETCHING, TabStatus.SUCCEEDED},
    TabStatus.FETCHING: {TabStatus.SUCCEEDED, TabStatus.FAILED, TabStatus.IDLE},
    TabStatus.SUCCEEDED: {TabStatus.FETCHING, TabStatus.IDLE},
    TabStatus.FAILED: {TabStatus.FETCHING, TabStatus.SUCCEEDED, TabStatus.IDLE},
}


class InvalidTransition(RuntimeError):
    pass


def sources_from_config(tab_id: str) -> Tuple[Source, ...]:
    """Sources configured for ``tab_id`` in tabs.yaml (empty when unknown)."""
    tab = config.TABS.get(tab_id) or {}
    return tuple(Source.from_dict(entry) for entry in tab.get("sources", []))


class FailureNotifier:
    """Reports per-source failures as one batch per fetch.

    A batch arriving within ``debounce_seconds`` of the previous notice is
    dropped, so overlapping triggers do not repeat the same warning.
    """

    def __init__(
        self,
        callback: Optional[Callable[[str, Tuple[FailureInfo, ...]], None]] = None,
        debounce_seconds: Optional[float] = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.callback = callback or self._log_failures
        self.debounce_seconds = config.FAILURE_NOTICE_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self._clock = clock
        self._last_notice_at: Optional[float] = None

    @staticmethod
    def _log_failures(tab_id: str, failures: Tuple[FailureInfo, ...]) -> None:
        summary = ", ".join(f"{f.name} ({f.status})" for f in failures)
        logger.warning(f"⚠️ Unable to fetch {len(failures)} source(s) for tab {tab_id}: {summary}")

    def notify(self, tab_id: str, failures: Sequence[FailureInfo]) -> bool:
        if not failures:
            return False
        now = self._clock()
        if self._last_notice_at is not None and now - self._last_notice_at < self.debounce_seconds:
            logger.debug(f"Suppressed duplicate failure notice for tab {tab_id}")
            return False
        self._last_notice_at = now
        self.callback(tab_id, tuple(failures))
        return True


class NewsOrchestrator:
    def __init__(
        self,
        fetch_source: FetchSource,
        cache_store: CacheStore,
        *,
        notifier: Optional[FailureNotifier] = None,
        tables: Optional[ScoringTables] = None,
        highlight_seconds: Optional[float] = None,
        sources_for: Callable[[str], Sequence[Source]] = sources_from_config,
        clock: Callable[[], float] = time,
    ):
        self._fetch_source = fetch_source
        self.cache = cache_store
        self.notifier = notifier or FailureNotifier()
        self.tables = tables
        self.highlight_seconds = config.NEW_ARTICLE_HIGHLIGHT_SECONDS if highlight_seconds is None else highlight_seconds
        self._sources_for = sources_for
        self._clock = clock

        self.active_tab_id: Optional[str] = None
        self.current_view: Optional[TabView] = None
        self.highlighted_ids: FrozenSet[str] = frozenset()
        self._states: Dict[str, TabFetchState] = {}
        self._in_flight: Dict[str, Task] = {}
        self._listeners: List[Callable[[TabView], None]] = []
        self._highlight_handle = None

    # State

    def get_state(self, tab_id: str) -> Optional[TabFetchState]:
        return self._states.get(tab_id)

    def _transition(self, tab_id: str, status: TabStatus, **changes) -> TabFetchState:
        current = self._states[tab_id]
        if status is not current.status and status not in VALID_TRANSITIONS[current.status]:
            raise InvalidTransition(f"Tab {tab_id}: {current.status.value} -> {status.value}")
        updated = replace(current, status=status, **changes)
        self._states[tab_id] = updated
        logger.debug(f"Tab {tab_id}: {current.status.value} -> {status.value}")
        return updated

    def is_active(self, tab_id: str) -> bool:
        return self.active_tab_id == tab_id

    def set_active_tab(self, tab_id: str) -> None:
        """Make ``tab_id`` the tab whose results may be applied."""
        previous = self.active_tab_id
        if previous == tab_id:
            return
        self.active_tab_id = tab_id
        self._clear_highlight()
        state = self._states.get(previous) if previous else None
        if state is not None and previous not in self._in_flight and state.status is not TabStatus.IDLE:
            self._transition(previous, TabStatus.IDLE)
        logger.info(f"Active tab: {previous} -> {tab_id}")

    # Presentation channel

    def subscribe(self, listener: Callable[[TabView], None]) -> None:
        self._listeners.append(listener)

    def _apply_view(self, view: TabView) -> None:
        self.current_view = view
        for listener in self._listeners:
            listener(view)

    def _highlight(self, new_ids: FrozenSet[str]) -> None:
        self._clear_highlight()
        if not new_ids:
            return
        self.highlighted_ids = new_ids
        if self.highlight_seconds > 0:
            self._highlight_handle = get_running_loop().call_later(self.highlight_seconds, self._clear_highlight)

    def _clear_highlight(self) -> None:
        if self._highlight_handle is not None:
            self._highlight_handle.cancel()
            self._highlight_handle = None
        self.highlighted_ids = frozenset()

    # Fetching

    async def fetch_news(
        self,
        tab_id: str,
        sources: Iterable[Source],
        use_cache: bool = True,
        force_refresh: bool = False,
    ) -> TabView:
        """Entry point for the presentation layer.

        Returns the view for ``tab_id``: the filtered cached snapshot on a
        cache hit (a silent refresh then runs in the background), otherwise
        the result of a fresh aggregation. The first call for a tab also makes
        it the active tab.
        """
        sources = tuple(sources)
        if self.active_tab_id is None:
            self.set_active_tab(tab_id)

        state = self._states.get(tab_id)
        if state is None:
            state = TabFetchState(tab_id=tab_id, sources=sources)
            self._states[tab_id] = state
        sources_changed = state.last_fetch_timestamp > 0 and state.source_key != frozenset(s.url for s in sources)

        in_flight = self._in_flight.get(tab_id)
        if in_flight is not None:
            logger.debug(f"Tab {tab_id}: fetch already in flight, joining it")
            return await shield(in_flight)

        if sources_changed:
            logger.info(f"Tab {tab_id}: source list changed, forcing a fresh fetch")
            self._states[tab_id] = replace(state, sources=sources, previous_ids=frozenset())
        elif use_cache and not force_refresh:
            snapshot = await self.cache.get(tab_id)
            if snapshot is not None:
                view = self._serve_snapshot(tab_id, sources, snapshot)
                self._start_fetch(tab_id, sources, user_significant=False)
                return view

        return await shield(self._start_fetch(tab_id, sources, user_significant=True))

    async def refresh_news(self, tab_id: str) -> TabView:
        """Manual refresh with the tab's current sources, bypassing the cache."""
        state = self._states.get(tab_id)
        sources = state.sources if state is not None else tuple(self._sources_for(tab_id))
        return await self.fetch_news(tab_id, sources, use_cache=False, force_refresh=True)

    async def activate_tab(self, tab_id: str, sources: Optional[Iterable[Source]] = None) -> TabView:
        """Tab switch: make the tab active and show its news."""
        self.set_active_tab(tab_id)
        if sources is None:
            state = self._states.get(tab_id)
            sources = state.sources if state is not None else self._sources_for(tab_id)
        return await self.fetch_news(tab_id, sources)

    async def wait_for_tab(self, tab_id: str) -> Optional[TabView]:
        """Wait for the tab's in-flight fetch, if any, then return the current view."""
        task = self._in_flight.get(tab_id)
        if task is not None:
            await shield(task)
        return self.current_view

    def _serve_snapshot(self, tab_id: str, sources: Sequence[Source], snapshot: CachedSnapshot) -> TabView:
        view = self._snapshot_view(tab_id, sources, snapshot, TabStatus.SUCCEEDED)
        state = self._states[tab_id]
        previous_ids = state.previous_ids or snapshot.article_ids
        if self.is_active(tab_id):
            self._transition(tab_id, TabStatus.SUCCEEDED, previous_ids=previous_ids)
            self._apply_view(view)
        logger.info(f"Tab {tab_id}: serving {len(view.articles)} cached articles, revalidating")
        return view

    @staticmethod
    def _snapshot_view(tab_id: str, sources: Sequence[Source], snapshot: CachedSnapshot, status: TabStatus,
                       failures: Tuple[FailureInfo, ...] = ()) -> TabView:
        names = {source.name for source in sources}
        return TabView(
            tab_id=tab_id,
            status=status,
            articles=tuple(a for a in snapshot.articles if a.source in names),
            failures=failures,
            from_cache=True,
            timestamp=snapshot.timestamp,
        )

    def _start_fetch(self, tab_id: str, sources: Tuple[Source, ...], user_significant: bool) -> Task:
        task = self._in_flight.get(tab_id)
        if task is not None:
            return task
        self._transition(tab_id, TabStatus.FETCHING, in_flight=True, sources=sources)
        if user_significant and self.is_active(tab_id):
            previous = self.current_view if self.current_view and self.current_view.tab_id == tab_id else None
            self._apply_view(replace(previous, status=TabStatus.FETCHING) if previous
                             else TabView(tab_id=tab_id, status=TabStatus.FETCHING))
        task = create_task(self._run_fetch(tab_id, sources, user_significant))
        self._in_flight[tab_id] = task
        task.add_done_callback(lambda t: self._in_flight.pop(tab_id, None) if self._in_flight.get(tab_id) is t else None)
        return task

    async def _gather_sources(self, sources: Sequence[Source]) -> List[SourceResult]:
        outcomes = await gather(*(self._fetch_source(source) for source in sources), return_exceptions=True)
        results = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, SourceResult):
                results.append(outcome)
            elif isinstance(outcome, (FeedPipelineError, TimeoutError)):
                message = getattr(outcome, "message", None) or "Request timeout"
                results.append(SourceResult(source=source, error=FailureInfo(source.name, status_for_error(outcome), message)))
            else:
                raise outcome
        return results

    @trace_span(
        "orchestrator.fetch_tab",
        tracer_name="orchestrator",
        attr_from_args=lambda self, tab_id, sources, user_significant: {
            "tab.id": tab_id,
            "tab.sources": len(sources),
            "tab.user_significant": user_significant,
        },
    )
    async def _run_fetch(self, tab_id: str, sources: Tuple[Source, ...], user_significant: bool) -> TabView:
        started = self._clock()
        state = self._states[tab_id]
        previous_ids = state.previous_ids
        first_load = state.last_fetch_timestamp == 0 and not previous_ids
        try:
            results = await self._gather_sources(sources)
            result = aggregate(results, previous_ids, tables=self.tables)
        except Exception as e:
            logger.exception(f"Tab {tab_id}: unexpected error during aggregation: {e}")
            return await self._fall_back(tab_id, sources)

        view = self._result_view(tab_id, sources, result, started)

        # The tab was switched away while this fetch ran
        if not self.is_active(tab_id):
            logger.info(f"Tab {tab_id}: discarding result of stale fetch ({len(result.articles)} articles)")
            self._transition(tab_id, TabStatus.IDLE, in_flight=False)
            return view

        if view.status is TabStatus.FAILED:
            return await self._apply_failed(tab_id, sources, result, started, user_significant)

        snapshot = CachedSnapshot(tab_id, result.articles, result.article_ids, started)
        self._transition(
            tab_id,
            TabStatus.SUCCEEDED,
            in_flight=False,
            previous_ids=result.article_ids,
            last_fetch_timestamp=started,
        )
        self._apply_view(view)
        if user_significant:
            if not first_load:
                self._highlight(result.new_ids)
            self.notifier.notify(tab_id, result.failures)
        await self.cache.set(tab_id, snapshot)
        logger.info(
            f"✅ Tab {tab_id}: {len(result.articles)} articles, {len(result.new_ids)} new, {len(result.failures)} failed"
        )
        return view

    @staticmethod
    def _result_view(tab_id: str, sources: Sequence[Source], result: AggregationResult, timestamp: float) -> TabView:
        failed = bool(sources) and not result.articles and len(result.failures) == len(sources)
        return TabView(
            tab_id=tab_id,
            status=TabStatus.FAILED if failed else TabStatus.SUCCEEDED,
            articles=result.articles,
            failures=result.failures,
            empty_sources=result.empty_sources,
            new_ids=result.new_ids,
            timestamp=timestamp,
        )

    async def _apply_failed(self, tab_id: str, sources: Sequence[Source], result: AggregationResult,
                            started: float, user_significant: bool) -> TabView:
        """Every source failed: keep the last snapshot on screen, report the failures."""
        snapshot = await self.cache.get(tab_id)
        if snapshot is not None:
            view = self._snapshot_view(tab_id, sources, snapshot, TabStatus.FAILED, result.failures)
        else:
            view = TabView(tab_id=tab_id, status=TabStatus.FAILED, failures=result.failures, timestamp=started)
        self._transition(tab_id, TabStatus.FAILED, in_flight=False, last_fetch_timestamp=started)
        if self.is_active(tab_id):
            self._apply_view(view)
            if user_significant:
                self.notifier.notify(tab_id, result.failures)
        logger.error(f"❌ Tab {tab_id}: all {len(sources)} sources failed")
        return view

    async def _fall_back(self, tab_id: str, sources: Sequence[Source]) -> TabView:
        snapshot = await self.cache.get(tab_id)
        if snapshot is not None:
            view = self._snapshot_view(tab_id, sources, snapshot, TabStatus.FAILED)
        else:
            view = TabView(tab_id=tab_id, status=TabStatus.FAILED)
        self._transition(tab_id, TabStatus.FAILED, in_flight=False)
        if self.is_active(tab_id):
            self._apply_view(view)
        return view

    # Periodic refresh

    async def run_auto_refresh(self, interval_seconds: Optional[float] = None) -> None:
        """Silently refresh the active tab every ``interval_seconds`` until cancelled."""
        interval = interval_seconds or config.AUTO_REFRESH_MINUTES * 60
        logger.info(f"Auto-refresh every {interval:.0f}s")
        while True:
            await sleep(interval)
            tab_id = self.active_tab_id
            state = self._states.get(tab_id) if tab_id else None
            if state is None or tab_id in self._in_flight:
                continue
            logger.debug(f"Auto-refreshing tab {tab_id}")
            await shield(self._start_fetch(tab_id, state.sources, user_significant=False))

    async def close(self) -> None:
        self._clear_highlight()
        pending = list(self._in_flight.values())
        if pending:
            await gather(*pending, return_exceptions=True)
