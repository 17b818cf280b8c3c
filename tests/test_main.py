import json

import pytest

from src.main import AggregatorConfig, build_pipeline, load_sources
from src.models.content import SourceConfigError
from src.pipeline.aggregator import SortOrder
from src.services.icon_store import DiskIconStore


def test_config_defaults(monkeypatch):
    for name in ("NEWS_ICON_CACHE_DIR", "NEWS_REQUEST_TIMEOUT", "NEWS_HOURS_BACK", "NEWS_SORT_ORDER",
                 "NEWS_MAX_ICON_BYTES", "NEWS_VERIFY_SSL", "LOG_LEVEL", "LOG_DIR", "LOG_FORMAT", "NEWS_SOURCES_FILE"):
        monkeypatch.delenv(name, raising=False)

    config = AggregatorConfig.from_env()

    assert config == AggregatorConfig()
    assert config.sort_order is SortOrder.NEWEST_FIRST
    assert config.max_icon_bytes == 1024 * 1024
    assert config.verify_ssl is False
    assert config.structured_logging is False


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("NEWS_ICON_CACHE_DIR", "/tmp/icons")
    monkeypatch.setenv("NEWS_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("NEWS_HOURS_BACK", "6")
    monkeypatch.setenv("NEWS_SORT_ORDER", "OLDEST_FIRST")
    monkeypatch.setenv("NEWS_VERIFY_SSL", "true")

    config = AggregatorConfig.from_env()

    assert config.cache_dir == "/tmp/icons"
    assert config.request_timeout == 12.5
    assert config.hours_back == 6.0
    assert config.sort_order is SortOrder.OLDEST_FIRST
    assert config.verify_ssl is True


@pytest.mark.parametrize("value, expected", [("json", True), ("JSON", True), ("text", False)])
def test_log_format_selects_structured_logging(monkeypatch, value, expected):
    monkeypatch.setenv("LOG_FORMAT", value)
    assert AggregatorConfig.from_env().structured_logging is expected


def test_invalid_sort_order(monkeypatch):
    monkeypatch.setenv("NEWS_SORT_ORDER", "random")
    with pytest.raises(ValueError):
        AggregatorConfig.from_env()


def test_load_sources(tmp_path):
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps(["https://a.example.com/rss"]), encoding="utf-8")
    as_object = tmp_path / "object.json"
    as_object.write_text(json.dumps({"urls": [{"url": "https://b.example.com", "selector": "h2"}]}), encoding="utf-8")
    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps("https://a.example.com/rss"), encoding="utf-8")

    assert load_sources(str(as_list)) == ["https://a.example.com/rss"]
    assert load_sources(str(as_object)) == [{"url": "https://b.example.com", "selector": "h2"}]
    with pytest.raises(SourceConfigError):
        load_sources(str(invalid))


def test_build_pipeline_shares_one_http_client(tmp_path):
    config = AggregatorConfig(cache_dir=str(tmp_path / "icons"), sort_order=SortOrder.OLDEST_FIRST)

    pipeline = build_pipeline(config)

    assert pipeline.icon_cache.http is pipeline.http
    assert pipeline.icon_cache.resolver.http is pipeline.http
    assert isinstance(pipeline.icon_cache.store, DiskIconStore)
    assert pipeline.sort_order is SortOrder.OLDEST_FIRST
    assert (tmp_path / "icons").is_dir()
