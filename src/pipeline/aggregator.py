"""
News aggregation pipeline.

One aggregation cycle: resolve favicons for every source, fetch all sources
concurrently with per-source isolation, flatten, filter by recency and sort.
The pipeline is built once per process around a shared IconCache and may run
many cycles, possibly overlapping.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from src.models.content import NewsItem, Source, parse_source
from src.services.errors import PipelineError
from src.services.http_client import HttpClient
from src.services.icon_cache import IconCache
from src.services.source_fetcher import FetchResult, SourceFetcher, create_source_fetchers, utc_now
from src.utils.logging_config import PerformanceTracker, log_pipeline_metrics


DEFAULT_RECENCY_WINDOW_HOURS = 24


class PipelineState(Enum):
    IDLE = "idle"
    RESOLVING_ICONS = "resolving_icons"
    FETCHING = "fetching"
    FILTERING = "filtering"
    SORTING = "sorting"
    DONE = "done"
    FAILED = "failed"


class SortOrder(Enum):
    """Publish-time ordering of the final sequence. Undated items are always last."""
    NEWEST_FIRST = "newest_first"
    OLDEST_FIRST = "oldest_first"


@dataclass
class AggregationRequest:
    """Sources plus the recency window for one cycle"""
    sources: List[Source]
    recency_window_hours: float = DEFAULT_RECENCY_WINDOW_HOURS

    @classmethod
    def from_payload(cls, payload: Union[List[Any], Dict[str, Any]]) -> "AggregationRequest":
        """
        Build a request from JSON-style input.

        Accepts a bare list of source entries or
        ``{"urls": [...], "newsHoursBack": n}``; entries may be URL strings or
        source mappings.

        Raises:
            SourceConfigError: if an entry cannot be turned into a source
        """
        if isinstance(payload, list):
            entries, hours = payload, DEFAULT_RECENCY_WINDOW_HOURS
        elif isinstance(payload, dict):
            entries = payload.get("urls") or payload.get("sources") or []
            hours = payload.get("newsHoursBack", DEFAULT_RECENCY_WINDOW_HOURS)
        else:
            raise TypeError(f"Unsupported request payload: {type(payload).__name__}")

        return cls(
            sources=[parse_source(entry) for entry in entries],
            recency_window_hours=float(hours),
        )


@dataclass
class AggregationResult:
    """Outcome of one cycle: items on success, an error description on failure."""
    generation: int
    state: PipelineState
    items: List[NewsItem] = field(default_factory=list)
    error: Optional[str] = None
    stale: bool = False
    fetch_results: List[FetchResult] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items]


ResultListener = Callable[[AggregationResult], Union[None, Awaitable[None]]]


def filter_by_recency(items: List[NewsItem], now: datetime, hours: float) -> List[NewsItem]:
    """
    Keep undated items and items published in ``[now - hours, now]``.

    Future-dated items are dropped whatever the window. The cutoff itself is
    inclusive.
    """
    cutoff = now - timedelta(hours=hours)
    return [
        item for item in items
        if item.published_at is None or cutoff <= item.published_at <= now
    ]


def sort_items(items: List[NewsItem], order: SortOrder = SortOrder.NEWEST_FIRST) -> List[NewsItem]:
    """Stable sort by publish time; undated items go last in either direction."""
    dated = [item for item in items if item.published_at is not None]
    undated = [item for item in items if item.published_at is None]
    dated.sort(key=lambda item: item.published_at, reverse=order is SortOrder.NEWEST_FIRST)
    return dated + undated


class AggregationPipeline:
    """
    Orchestrates aggregation cycles over a shared icon cache and HTTP client.

    ``run`` never raises: failures outside per-source isolation come back as a
    FAILED result carrying the error. ``aggregate`` is the raising variant.
    """

    def __init__(
        self,
        icon_cache: IconCache,
        http: HttpClient,
        fetchers: Optional[Dict[Any, SourceFetcher]] = None,
        sort_order: SortOrder = SortOrder.NEWEST_FIRST,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.icon_cache = icon_cache
        self.http = http
        self.fetchers = fetchers or create_source_fetchers(http, clock=clock)
        self.sort_order = sort_order
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.state = PipelineState.IDLE
        self._generation = 0
        self._delivered_generation = 0
        self._listeners: List[ResultListener] = []
        self._last_fetch_results: List[FetchResult] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.http.close()

    def on_result(self, listener: ResultListener) -> None:
        """Register a callback for delivered (non-stale) results."""
        self._listeners.append(listener)

    @property
    def generation(self) -> int:
        return self._generation

    def _set_state(self, generation: int, state: PipelineState) -> None:
        # The observable state follows the newest cycle only
        if generation == self._generation:
            self.state = state

    async def run(self, request: AggregationRequest) -> AggregationResult:
        """Run one aggregation cycle."""
        self._generation += 1
        generation = self._generation
        start = time.monotonic()

        try:
            items, fetch_results = await self._run_cycle(generation, request)
        except Exception as e:  # noqa: BLE001
            error = str(e) if isinstance(e, PipelineError) else f"{type(e).__name__}: {e}"
            self.logger.error(f"Aggregation cycle {generation} failed: {error}")
            self._set_state(generation, PipelineState.FAILED)
            result = AggregationResult(
                generation=generation,
                state=PipelineState.FAILED,
                error=error,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        else:
            self._set_state(generation, PipelineState.DONE)
            result = AggregationResult(
                generation=generation,
                state=PipelineState.DONE,
                items=items,
                fetch_results=fetch_results,
                duration_ms=(time.monotonic() - start) * 1000,
            )

        await self._deliver(result)
        return result

    async def aggregate(self, request: AggregationRequest) -> List[NewsItem]:
        """
        Run one cycle and return its items.

        Raises:
            PipelineError: if the cycle failed
        """
        result = await self.run(request)
        if not result.ok:
            raise PipelineError(result.error or "Aggregation failed")
        return result.items

    async def _run_cycle(self, generation: int, request: AggregationRequest):
        sources = request.sources
        self.logger.info(f"Starting aggregation cycle {generation} for {len(sources)} sources")

        # Icons
        self._set_state(generation, PipelineState.RESOLVING_ICONS)
        stage_start = time.monotonic()
        with PerformanceTracker(f"Icon resolution (cycle {generation})", self.logger):
            try:
                icon_refs = await self.icon_cache.get_icon_references(source.url for source in sources)
            except Exception as e:
                raise PipelineError(f"Icon resolution failed: {type(e).__name__}: {e}") from e
        log_pipeline_metrics(
            self.logger, "icons", len(sources),
            sum(1 for ref in icon_refs.values() if ref),
            (time.monotonic() - stage_start) * 1000,
        )

        # Fetch
        self._set_state(generation, PipelineState.FETCHING)
        stage_start = time.monotonic()
        with PerformanceTracker(f"Source fetch (cycle {generation})", self.logger):
            try:
                fetch_results = await asyncio.gather(*(
                    self._fetcher_for(source).fetch(source, icon_refs.get(source.url))
                    for source in sources
                ))
            except Exception as e:
                raise PipelineError(f"Fetch batch failed: {type(e).__name__}: {e}") from e

        self._last_fetch_results = list(fetch_results)
        all_items = [item for result in fetch_results for item in result.items]
        failed = sum(1 for result in fetch_results if not result.ok)
        log_pipeline_metrics(
            self.logger, "fetch", len(sources), len(all_items),
            (time.monotonic() - stage_start) * 1000,
            failed_sources=failed,
        )

        # Filter
        self._set_state(generation, PipelineState.FILTERING)
        stage_start = time.monotonic()
        now = self.clock()
        recent = filter_by_recency(all_items, now, request.recency_window_hours)
        log_pipeline_metrics(
            self.logger, "filter", len(all_items), len(recent),
            (time.monotonic() - stage_start) * 1000,
            hours_back=request.recency_window_hours,
        )

        # Sort
        self._set_state(generation, PipelineState.SORTING)
        ordered = sort_items(recent, self.sort_order)

        self.logger.info(
            f"Cycle {generation} complete: {len(ordered)} items from "
            f"{len(sources) - failed}/{len(sources)} sources"
        )
        return ordered, list(fetch_results)

    def _fetcher_for(self, source: Source) -> SourceFetcher:
        try:
            return self.fetchers[source.kind]
        except KeyError:
            raise PipelineError(f"No fetcher registered for {source.kind.value} sources")

    async def _deliver(self, result: AggregationResult) -> None:
        if result.generation < self._delivered_generation:
            result.stale = True
            self.logger.warning(
                f"Discarding stale result of cycle {result.generation}; "
                f"cycle {self._delivered_generation} was already delivered"
            )
            return

        self._delivered_generation = result.generation
        for listener in list(self._listeners):
            try:
                outcome = listener(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Result listener failed for cycle {result.generation}: {e}")

    def get_fetch_statistics(self) -> Dict[str, Any]:
        """Per-source statistics from the most recent fetch batch"""
        results = self._last_fetch_results
        stats = {
            "total_sources": len(results),
            "successful_sources": sum(1 for r in results if r.ok),
            "failed_sources": sum(1 for r in results if not r.ok),
            "total_items": sum(len(r.items) for r in results),
            "sources": {},
        }
        for r in results:
            stats["sources"][r.source.url] = {
                "kind": r.source.kind.value,
                "items": len(r.items),
                "fetch_time": r.fetch_time,
                "error": r.error,
            }
        return stats
