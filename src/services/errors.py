"""
Error taxonomy for the news aggregation pipeline.

Per-source and per-icon failures (network, parse, validation) are recovered
where they occur. Only PipelineError reaches the caller of an aggregation
cycle.
"""

from typing import Optional


class NewsAggregatorError(Exception):
    """Base class for all aggregation errors"""
    pass


class NetworkError(NewsAggregatorError):
    """Fetch or download failed (non-200 status, timeout, DNS/TLS failure)"""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(NewsAggregatorError):
    """Feed or HTML content could not be parsed into items"""
    pass


class ValidationError(NewsAggregatorError):
    """Downloaded bytes failed image-signature validation"""
    pass


class PipelineError(NewsAggregatorError):
    """Failure outside the per-source isolation boundaries"""
    pass
