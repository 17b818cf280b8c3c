#!/usr/bin/env python3
import os
import sys
import json
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from src.models.content import SourceConfigError
from src.pipeline.aggregator import AggregationPipeline, AggregationRequest, SortOrder
from src.services.errors import PipelineError
from src.services.favicon_resolver import FaviconResolver
from src.services.http_client import HttpClient
from src.services.icon_cache import DEFAULT_RETENTION_DAYS, IconCache
from src.services.icon_store import DiskIconStore
from src.utils.logging_config import setup_logging


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AggregatorConfig:
    """Operator configuration"""
    cache_dir: str = "temp_icons"
    request_timeout: float = 30.0
    hours_back: float = 24.0
    sort_order: SortOrder = SortOrder.NEWEST_FIRST
    max_icon_bytes: int = 1024 * 1024
    verify_ssl: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    structured_logging: bool = False
    sources_file: str = "sources.json"

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        """Load configuration from environment variables"""
        return cls(
            cache_dir=os.getenv('NEWS_ICON_CACHE_DIR', 'temp_icons'),
            request_timeout=float(os.getenv('NEWS_REQUEST_TIMEOUT', '30')),
            hours_back=float(os.getenv('NEWS_HOURS_BACK', '24')),
            sort_order=SortOrder(os.getenv('NEWS_SORT_ORDER', 'newest_first').strip().lower()),
            max_icon_bytes=int(os.getenv('NEWS_MAX_ICON_BYTES', str(1024 * 1024))),
            verify_ssl=_env_bool('NEWS_VERIFY_SSL', False),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_dir=os.getenv('LOG_DIR', 'logs'),
            structured_logging=os.getenv('LOG_FORMAT', 'text').strip().lower() == 'json',
            sources_file=os.getenv('NEWS_SOURCES_FILE', 'sources.json'),
        )


def build_icon_cache(config: AggregatorConfig, http: HttpClient) -> IconCache:
    return IconCache(
        resolver=FaviconResolver(http),
        http=http,
        store=DiskIconStore(config.cache_dir),
        max_icon_bytes=config.max_icon_bytes,
    )


def build_pipeline(config: AggregatorConfig) -> AggregationPipeline:
    """Wire one HTTP client, one icon cache and the pipeline around them."""
    http = HttpClient(timeout=config.request_timeout, verify_ssl=config.verify_ssl)
    return AggregationPipeline(
        icon_cache=build_icon_cache(config, http),
        http=http,
        sort_order=config.sort_order,
    )


def load_sources(path: str) -> List[Any]:
    """
    Read source entries from a JSON file.

    The file holds either a list of entries or ``{"urls": [...]}``.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("urls") or data.get("sources") or []
    if not isinstance(data, list):
        raise SourceConfigError(f"{path} must contain a list of sources")
    return data


async def handle_cache_management(args, config: AggregatorConfig) -> None:
    """Handle cache management commands"""
    async with HttpClient(timeout=config.request_timeout, verify_ssl=config.verify_ssl) as http:
        icon_cache = build_icon_cache(config, http)
        await icon_cache.initialize()

        if args.cache_stats:
            stats = icon_cache.get_cache_stats()
            print("Icon Cache Statistics")
            print("=" * 50)
            print(f"Cache directory: {stats['cache_directory']}")
            print(f"Cached files: {stats['total_files']}")
            print(f"Total size: {stats['total_size']} bytes")
            print(f"Indexed sources: {stats['memory_cache_size']}")

        if args.cleanup_cache:
            removed = await icon_cache.cleanup_old_cache(days=args.max_age_days)
            print(f"Removed {removed} icons older than {args.max_age_days} days")

        if args.clear_cache:
            if not args.yes:
                print("WARNING: This will clear ALL cached icons!")
                response = input("Are you sure? Type 'yes' to confirm: ")
                if response.lower() != 'yes':
                    print("Cache clear cancelled")
                    return
            stats = await icon_cache.clear_cache()
            print(f"Cleared {stats['files_removed']} cached icons")
            print(f"Cleared {stats['memory_entries']} index entries")


async def run_once(config: AggregatorConfig, sources: List[Any], hours: Optional[float]) -> Dict[str, Any]:
    request = AggregationRequest.from_payload({
        "urls": sources,
        "newsHoursBack": config.hours_back if hours is None else hours,
    })
    async with build_pipeline(config) as pipeline:
        result = await pipeline.run(request)
        if not result.ok:
            raise PipelineError(result.error or "Aggregation failed")
        return {
            "items": result.to_dicts(),
            "stats": pipeline.get_fetch_statistics(),
        }


async def main():
    """Main entry point"""
    import argparse
    parser = argparse.ArgumentParser(description="News headline aggregator")
    parser.add_argument('--sources', help='JSON file with source entries (default: $NEWS_SOURCES_FILE)')
    parser.add_argument('--hours', type=float, help='Recency window in hours (default: $NEWS_HOURS_BACK)')
    parser.add_argument('--oldest-first', action='store_true', help='Sort oldest items first')
    parser.add_argument('--with-stats', action='store_true', help='Include per-source fetch statistics')

    # Cache management commands
    parser.add_argument('--cache-stats', action='store_true', help='Show icon cache statistics')
    parser.add_argument('--cleanup-cache', action='store_true', help='Remove old cached icons')
    parser.add_argument('--max-age-days', type=int, default=DEFAULT_RETENTION_DAYS,
                        help=f'Age limit for --cleanup-cache (default: {DEFAULT_RETENTION_DAYS})')
    parser.add_argument('--clear-cache', action='store_true', help='Clear all cached icons')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')
    args = parser.parse_args()

    config = AggregatorConfig.from_env()
    if args.oldest_first:
        config.sort_order = SortOrder.OLDEST_FIRST

    setup_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        enable_structured_logging=config.structured_logging,
    )
    logger = logging.getLogger(__name__)

    try:
        # Handle cache management commands first
        if args.cache_stats or args.cleanup_cache or args.clear_cache:
            await handle_cache_management(args, config)
            return

        sources_file = args.sources or config.sources_file
        if not Path(sources_file).exists():
            print(f"Sources file not found: {sources_file}", file=sys.stderr)
            sys.exit(2)

        output = await run_once(config, load_sources(sources_file), args.hours)
        if not args.with_stats:
            output = output["items"]
        print(json.dumps(output, indent=2, ensure_ascii=False))
    except KeyboardInterrupt:
        print("\nShutting down...", file=sys.stderr)
    except ValueError as e:
        # SourceConfigError and malformed JSON
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    except PipelineError as e:
        logger.error(f"Aggregation failed: {e}")
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
