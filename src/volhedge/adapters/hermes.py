from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

import httpx

from volhedge.adapters.quote_source import QuoteUnavailableError
from volhedge.adapters.retry import retry_with_backoff
from volhedge.domain.fixed_point import scale_to_fp
from volhedge.domain.oracle import FeedId, Quote
from volhedge.observability import get_instrumentation

logger = logging.getLogger(__name__)

LATEST_PRICE_PATH = "/v2/updates/price/latest"

_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_MS = 200
_RETRY_MAX_DELAY_MS = 2_000


class _RetryableStatusError(RuntimeError):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"retryable status={response.status_code}")
        self.response = response


def normalize_feed_id(feed_id: str) -> str:
    value = feed_id.strip().lower()
    return value[2:] if value.startswith("0x") else value


def _parse_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"{field} must be an integer, got {value!r}")


def _scaled(block: Mapping[str, object], *, name: str) -> tuple[int, int, int]:
    expo = _parse_int(block.get("expo"), field=f"{name}.expo")
    price = scale_to_fp(_parse_int(block.get("price"), field=f"{name}.price"), expo)
    conf = scale_to_fp(_parse_int(block.get("conf"), field=f"{name}.conf"), expo)
    publish_time = _parse_int(block.get("publish_time", 0), field=f"{name}.publish_time")
    return price, max(conf, 0), publish_time


def parse_price_update(feed: FeedId, entry: Mapping[str, object]) -> Quote:
    """Turn one ``parsed`` entry of a Hermes price update into a fixed-point quote."""
    price_block = entry.get("price")
    ema_block = entry.get("ema_price")
    if not isinstance(price_block, Mapping) or not isinstance(ema_block, Mapping):
        raise ValueError("price update is missing price or ema_price")
    price_fp, conf_fp, publish_time = _scaled(price_block, name="price")
    ema_price_fp, _, _ = _scaled(ema_block, name="ema_price")
    return Quote(
        feed=feed,
        price_fp=price_fp,
        ema_price_fp=ema_price_fp,
        conf_fp=conf_fp,
        publish_time=publish_time,
    )


class HermesQuoteSource:
    """Pull-based quote source reading the latest Pyth update from a Hermes endpoint."""

    def __init__(
        self,
        feed_ids: Mapping[FeedId, str],
        *,
        base_url: str = "https://hermes.pyth.network",
        timeout: float | httpx.Timeout = 5.0,
        transport: httpx.BaseTransport | None = None,
        max_attempts: int = _RETRY_ATTEMPTS,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        if not feed_ids:
            raise ValueError("at least one feed id is required")
        self.feed_ids = {feed: normalize_feed_id(value) for feed, value in feed_ids.items()}
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=min(timeout, 3.0))
        )
        self.client = httpx.Client(base_url=base_url, timeout=resolved_timeout, transport=transport)
        self._max_attempts = max(1, max_attempts)
        self._sleep_fn = sleep_fn

    def __enter__(self) -> HermesQuoteSource:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _fetch(self, feed: FeedId, feed_id: str) -> dict:
        def _call() -> dict:
            with get_instrumentation().trace("hermes_latest", attrs={"feed": feed.value}):
                response = self.client.get(
                    LATEST_PRICE_PATH, params={"ids[]": feed_id, "parsed": "true"}
                )
            get_instrumentation().counter(
                "hermes_requests_total",
                attrs={"feed": feed.value, "status": str(response.status_code)},
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableStatusError(response)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Hermes response payload must be a JSON object")
            return payload

        def _retry_after(exc: Exception) -> str | None:
            response = getattr(exc, "response", None)
            return None if response is None else response.headers.get("Retry-After")

        return retry_with_backoff(
            _call,
            max_attempts=self._max_attempts,
            base_delay_ms=_RETRY_BASE_DELAY_MS,
            max_delay_ms=_RETRY_MAX_DELAY_MS,
            jitter_seed=7,
            retry_on_exceptions=(httpx.TimeoutException, httpx.TransportError, _RetryableStatusError),
            retry_after_getter=_retry_after,
            sleep_fn=self._sleep_fn,
        )

    def get_quote(self, feed: FeedId) -> Quote:
        feed_id = self.feed_ids.get(feed)
        if feed_id is None:
            raise QuoteUnavailableError(feed, "feed not configured")
        try:
            payload = self._fetch(feed, feed_id)
            entries = payload.get("parsed")
            if not isinstance(entries, list):
                raise ValueError("Hermes response has no parsed updates")
            for entry in entries:
                if isinstance(entry, Mapping) and normalize_feed_id(str(entry.get("id", ""))) == feed_id:
                    return parse_price_update(feed, entry)
            raise ValueError(f"feed id {feed_id} missing from response")
        except (httpx.HTTPError, _RetryableStatusError, ValueError) as exc:
            logger.warning(
                "hermes_quote_unavailable",
                extra={"extra": {"feed": feed.value, "feed_id": feed_id, "error": str(exc)}},
            )
            raise QuoteUnavailableError(feed, str(exc)) from exc
