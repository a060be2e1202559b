from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from volhedge.domain.oracle import FeedId, Quote


class QuoteUnavailableError(RuntimeError):
    """Raised when a feed cannot produce a quote (transport failure, missing feed, bad payload)."""

    def __init__(self, feed: FeedId, message: str) -> None:
        super().__init__(f"{feed.value}: {message}")
        self.feed = feed


class QuoteSource(Protocol):
    def get_quote(self, feed: FeedId) -> Quote: ...


class StaticQuoteSource:
    """In-memory quotes, replaced wholesale or per feed by replays and tests."""

    def __init__(self, quotes: Mapping[FeedId, Quote] | None = None) -> None:
        self._quotes: dict[FeedId, Quote] = dict(quotes or {})

    def set_quote(self, quote: Quote) -> None:
        self._quotes[quote.feed] = quote

    def clear(self, feed: FeedId | None = None) -> None:
        if feed is None:
            self._quotes.clear()
        else:
            self._quotes.pop(feed, None)

    def get_quote(self, feed: FeedId) -> Quote:
        quote = self._quotes.get(feed)
        if quote is None:
            raise QuoteUnavailableError(feed, "no quote configured")
        return quote
