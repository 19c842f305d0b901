"""Rate-limit header parsing, per-model tracking and client-side limiting."""

from .limiter import ClientRateLimiter
from .parsers import parser_for
from .tracker import RateLimitInfo, RateLimitTracker

__all__ = [
    "ClientRateLimiter",
    "RateLimitInfo",
    "RateLimitTracker",
    "parser_for",
]
