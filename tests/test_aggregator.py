import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models.content import HTMLSource, NewsItem, RSSSource, SourceKind
from src.pipeline.aggregator import (
    AggregationPipeline,
    AggregationRequest,
    PipelineState,
    SortOrder,
    filter_by_recency,
    sort_items,
)
from src.services.errors import NetworkError, PipelineError
from src.services.http_client import HttpClient
from src.services.icon_cache import IconCache
from src.services.source_fetcher import SourceFetcher


NOW = datetime(2025, 10, 17, 12, 0, tzinfo=timezone.utc)


def item(title, hours_ago=None, source="https://a.example.com/rss"):
    published = None if hours_ago is None else NOW - timedelta(hours=hours_ago)
    return NewsItem(title=title, link=f"https://a.example.com/{title}", source_url=source, published_at=published)


class StaticFetcher(SourceFetcher):
    """Serves canned items (or raises canned errors) per source URL."""

    kind = SourceKind.RSS

    def __init__(self, responses, gate=None):
        super().__init__(http=MagicMock())
        self.responses = responses
        self.gate = gate or {}

    async def fetch_items(self, source, favicon_ref=None):
        if source.url in self.gate:
            await self.gate[source.url].wait()
        response = self.responses[source.url]
        if isinstance(response, Exception):
            raise response
        return [replace(i, favicon_ref=favicon_ref) for i in response]


def make_icon_cache(refs=None, error=None):
    icon_cache = MagicMock(spec=IconCache)
    icon_cache.get_icon_references = AsyncMock(return_value=refs or {}, side_effect=error)
    return icon_cache


def make_pipeline(fetcher, icon_cache=None, sort_order=SortOrder.NEWEST_FIRST):
    return AggregationPipeline(
        icon_cache=icon_cache or make_icon_cache(),
        http=AsyncMock(spec=HttpClient),
        fetchers={SourceKind.RSS: fetcher, SourceKind.HTML: fetcher},
        sort_order=sort_order,
        clock=lambda: NOW,
    )


def titles(items):
    return [i.title for i in items]


class TestFilteringAndSorting:

    @pytest.mark.asyncio
    async def test_recency_window_and_order(self):
        url = "https://a.example.com/rss"
        fetcher = StaticFetcher({url: [
            item("old", hours_ago=10),
            item("undated"),
            item("future", hours_ago=-1),
            item("recent", hours_ago=2),
        ]})
        pipeline = make_pipeline(fetcher)

        result = await pipeline.run(AggregationRequest([RSSSource(url)], recency_window_hours=4))

        assert result.state is PipelineState.DONE
        assert titles(result.items) == ["recent", "undated"]

    def test_cutoff_is_inclusive(self):
        items = [item("edge", hours_ago=4), item("just-outside", hours_ago=4.0001)]
        assert titles(filter_by_recency(items, NOW, 4)) == ["edge"]

    def test_item_published_now_is_kept(self):
        assert titles(filter_by_recency([item("now", hours_ago=0)], NOW, 1)) == ["now"]

    def test_sort_is_stable_and_undated_last(self):
        items = [
            item("u1"), item("b", hours_ago=3), item("a1", hours_ago=1),
            item("u2"), item("a2", hours_ago=1), item("c", hours_ago=5),
        ]
        assert titles(sort_items(items, SortOrder.NEWEST_FIRST)) == ["a1", "a2", "b", "c", "u1", "u2"]
        assert titles(sort_items(items, SortOrder.OLDEST_FIRST)) == ["c", "b", "a1", "a2", "u1", "u2"]

    @pytest.mark.asyncio
    async def test_oldest_first_pipeline(self):
        url = "https://a.example.com/rss"
        fetcher = StaticFetcher({url: [item("newer", 1), item("undated"), item("older", 3)]})
        pipeline = make_pipeline(fetcher, sort_order=SortOrder.OLDEST_FIRST)

        items = await pipeline.aggregate(AggregationRequest([RSSSource(url)], 24))

        assert titles(items) == ["older", "newer", "undated"]


class TestIsolation:

    @pytest.mark.asyncio
    async def test_failing_source_does_not_fail_cycle(self):
        good = "https://a.example.com/rss"
        bad = "https://b.example.com/rss"
        fetcher = StaticFetcher({
            good: [item("kept", 1)],
            bad: NetworkError("HTTP 502", url=bad, status=502),
        })
        pipeline = make_pipeline(fetcher)

        result = await pipeline.run(AggregationRequest([RSSSource(good), RSSSource(bad)], 24))

        assert result.ok
        assert titles(result.items) == ["kept"]
        assert result.fetch_results[1].error == "NetworkError: HTTP 502"

        stats = pipeline.get_fetch_statistics()
        assert stats["successful_sources"] == 1
        assert stats["failed_sources"] == 1
        assert stats["sources"][bad]["error"] == "NetworkError: HTTP 502"

    @pytest.mark.asyncio
    async def test_icon_batch_failure_fails_cycle(self):
        url = "https://a.example.com/rss"
        pipeline = make_pipeline(
            StaticFetcher({url: [item("never", 1)]}),
            icon_cache=make_icon_cache(error=RuntimeError("disk on fire")),
        )

        result = await pipeline.run(AggregationRequest([RSSSource(url)], 24))

        assert result.state is PipelineState.FAILED
        assert result.items == []
        assert "disk on fire" in result.error
        assert pipeline.state is PipelineState.FAILED

        with pytest.raises(PipelineError):
            await pipeline.aggregate(AggregationRequest([RSSSource(url)], 24))

    @pytest.mark.asyncio
    async def test_icons_are_attached_per_source(self):
        a = "https://a.example.com/rss"
        b = "https://b.example.com/news"
        fetcher = StaticFetcher({a: [item("from-a", 1)], b: [item("from-b", 2, source=b)]})
        icon_cache = make_icon_cache(refs={a: "data:image/png;base64,AAAA", b: None})
        pipeline = make_pipeline(fetcher, icon_cache=icon_cache)

        items = await pipeline.aggregate(AggregationRequest(
            [RSSSource(a), HTMLSource(url=b, item_selector="li")], 24,
        ))

        assert [(i.title, i.favicon_ref) for i in items] == [
            ("from-a", "data:image/png;base64,AAAA"),
            ("from-b", None),
        ]
        requested = list(icon_cache.get_icon_references.await_args[0][0])
        assert requested == [a, b]

    @pytest.mark.asyncio
    async def test_empty_request(self):
        pipeline = make_pipeline(StaticFetcher({}))

        result = await pipeline.run(AggregationRequest([], 24))

        assert result.ok
        assert result.items == []


class TestGenerations:

    @pytest.mark.asyncio
    async def test_stale_cycle_is_not_delivered(self):
        slow = "https://slow.example.com/rss"
        fast = "https://fast.example.com/rss"
        gate = asyncio.Event()
        fetcher = StaticFetcher({slow: [item("slow", 1)], fast: [item("fast", 1)]}, gate={slow: gate})
        pipeline = make_pipeline(fetcher)
        delivered = []
        pipeline.on_result(lambda result: delivered.append(result.generation))

        first = asyncio.create_task(pipeline.run(AggregationRequest([RSSSource(slow)], 24)))
        await asyncio.sleep(0)

        second = await pipeline.run(AggregationRequest([RSSSource(fast)], 24))
        gate.set()
        first_result = await first

        assert second.generation == 2 and not second.stale
        assert first_result.generation == 1 and first_result.stale
        assert titles(first_result.items) == ["slow"]
        assert delivered == [2]
        assert pipeline.state is PipelineState.DONE

    @pytest.mark.asyncio
    async def test_async_listener_and_in_order_delivery(self):
        url = "https://a.example.com/rss"
        pipeline = make_pipeline(StaticFetcher({url: [item("x", 1)]}))
        seen = []

        async def listener(result):
            seen.append((result.generation, titles(result.items)))

        pipeline.on_result(listener)
        await pipeline.run(AggregationRequest([RSSSource(url)], 24))
        await pipeline.run(AggregationRequest([RSSSource(url)], 24))

        assert seen == [(1, ["x"]), (2, ["x"])]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_run(self):
        url = "https://a.example.com/rss"
        pipeline = make_pipeline(StaticFetcher({url: [item("x", 1)]}))

        def broken(result):
            raise ValueError("listener bug")

        pipeline.on_result(broken)
        result = await pipeline.run(AggregationRequest([RSSSource(url)], 24))

        assert result.ok


class TestRequestPayload:

    def test_bare_list(self):
        request = AggregationRequest.from_payload([
            "https://a.example.com/rss",
            {"url": "https://b.example.com/", "selector": "article h2"},
        ])
        assert request.recency_window_hours == 24
        assert [s.kind for s in request.sources] == [SourceKind.RSS, SourceKind.HTML]

    def test_urls_object(self):
        request = AggregationRequest.from_payload({"urls": ["https://a.example.com/rss"], "newsHoursBack": 6})
        assert request.recency_window_hours == 6.0
        assert request.sources == [RSSSource("https://a.example.com/rss")]

    def test_unsupported_payload(self):
        with pytest.raises(TypeError):
            AggregationRequest.from_payload("https://a.example.com/rss")


@pytest.mark.asyncio
async def test_context_manager_closes_http():
    pipeline = make_pipeline(StaticFetcher({}))
    async with pipeline:
        pass
    pipeline.http.close.assert_awaited_once()
