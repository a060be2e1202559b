from __future__ import annotations

import httpx
import pytest

from volhedge.adapters.hermes import (
    LATEST_PRICE_PATH,
    HermesQuoteSource,
    normalize_feed_id,
    parse_price_update,
)
from volhedge.adapters.quote_source import QuoteUnavailableError
from volhedge.domain.oracle import FeedId

FEED_HEX = "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d"


def _entry(feed_hex: str = FEED_HEX) -> dict:
    return {
        "id": feed_hex,
        "price": {"price": "6140993501000", "conf": "3101287", "expo": -8, "publish_time": 1_700_000_000},
        "ema_price": {"price": "6139000000000", "conf": "3000000", "expo": -8, "publish_time": 1_700_000_000},
    }


def _source(handler, **kwargs) -> HermesQuoteSource:
    return HermesQuoteSource(
        {FeedId.PRIMARY: "0x" + FEED_HEX.upper()},
        base_url="https://hermes.test",
        transport=httpx.MockTransport(handler),
        sleep_fn=lambda _delay: None,
        **kwargs,
    )


def test_normalize_feed_id_strips_prefix_and_case() -> None:
    assert normalize_feed_id(" 0xABcd ") == "abcd"
    assert normalize_feed_id("abcd") == "abcd"


def test_parse_price_update_scales_to_fixed_point() -> None:
    quote = parse_price_update(FeedId.PRIMARY, _entry())

    assert quote.price_fp == 61_409_935_010
    assert quote.ema_price_fp == 61_390_000_000
    assert quote.conf_fp == 31_012
    assert quote.publish_time == 1_700_000_000


def test_parse_price_update_rejects_missing_blocks() -> None:
    with pytest.raises(ValueError):
        parse_price_update(FeedId.PRIMARY, {"id": FEED_HEX, "price": {"price": "1", "conf": "0", "expo": 0}})


def test_get_quote_requests_latest_parsed_update() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"binary": {}, "parsed": [_entry()]})

    with _source(handler) as source:
        quote = source.get_quote(FeedId.PRIMARY)

    assert quote.feed is FeedId.PRIMARY
    assert quote.price_fp == 61_409_935_010
    assert seen[0].url.path == LATEST_PRICE_PATH
    assert seen[0].url.params["ids[]"] == FEED_HEX
    assert seen[0].url.params["parsed"] == "true"


def test_get_quote_retries_server_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"parsed": [_entry()]})

    with _source(handler) as source:
        quote = source.get_quote(FeedId.PRIMARY)

    assert calls["count"] == 2
    assert quote.ema_price_fp == 61_390_000_000


def test_get_quote_wraps_exhausted_retries() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(429, headers={"Retry-After": "0"})

    with _source(handler, max_attempts=2) as source, pytest.raises(QuoteUnavailableError) as exc_info:
        source.get_quote(FeedId.PRIMARY)

    assert calls["count"] == 2
    assert exc_info.value.feed is FeedId.PRIMARY


@pytest.mark.parametrize(
    ("status", "body"),
    [
        (404, {"error": "not found"}),
        (200, {"parsed": []}),
        (200, {"parsed": [_entry("00" * 32)]}),
        (200, ["not", "an", "object"]),
    ],
)
def test_get_quote_rejects_unusable_responses(status: int, body: object) -> None:
    with _source(lambda request: httpx.Response(status, json=body)) as source, pytest.raises(QuoteUnavailableError):
        source.get_quote(FeedId.PRIMARY)


def test_unconfigured_feed_is_unavailable() -> None:
    with _source(lambda request: httpx.Response(200, json={})) as source:
        with pytest.raises(QuoteUnavailableError):
            source.get_quote(FeedId.SECONDARY)
