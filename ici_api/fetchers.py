"""
Upstream fetchers for the base index document and the three market quotes.

A fetcher raises ``UpstreamFetchError`` only when the call itself fails
(transport error, timeout, non-2xx status, body that cannot be decoded at
all). Missing or odd fields inside a good response become ``None``.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

import httpx

from .errors import UpstreamFetchError

COINGECKO_BTC_URL = (
    "https://api.coingecko.com/api/v3/simple/price"
    "?ids=bitcoin&vs_currencies=usd&include_market_cap=true"
)
GOLD_API_URL = "https://api.gold-api.com/price/XAU"
STOOQ_SPX_URL = "https://stooq.com/q/l/?s=^spx&f=sd2t2ohlcv&h&e=csv"

STOOQ_CLOSE_COLUMN = 6


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


async def _get(client: httpx.AsyncClient, source: str, url: str) -> httpx.Response:
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise UpstreamFetchError(source, f"status {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise UpstreamFetchError(source, exc.__class__.__name__) from exc
    return response


async def fetch_json(client: httpx.AsyncClient, source: str, url: str) -> Any:
    response = await _get(client, source, url)
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamFetchError(source, "malformed JSON") from exc


async def fetch_index_document(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    payload = await fetch_json(client, "index", url)
    if not isinstance(payload, dict):
        raise UpstreamFetchError("index", "document is not a JSON object")
    return payload


async def fetch_btc_market(client: httpx.AsyncClient) -> Dict[str, Any]:
    data = await fetch_json(client, "coingecko", COINGECKO_BTC_URL)
    btc = data.get("bitcoin") if isinstance(data, dict) else None
    if not isinstance(btc, dict):
        btc = {}
    return {"price": to_number(btc.get("usd")), "marketCap": to_number(btc.get("usd_market_cap"))}


async def fetch_gold_market(client: httpx.AsyncClient) -> Dict[str, Any]:
    data = await fetch_json(client, "gold-api", GOLD_API_URL)
    price = data.get("price") if isinstance(data, dict) else None
    return {"price": to_number(price), "marketCap": None, "marketCapEstimate": True}


def parse_stooq_close(csv_text: str) -> Optional[float]:
    lines = csv_text.strip().splitlines()
    if len(lines) < 2:
        return None
    parts = lines[1].split(",")
    if len(parts) <= STOOQ_CLOSE_COLUMN:
        return None
    return to_number(parts[STOOQ_CLOSE_COLUMN].strip())


async def fetch_sp500_market(client: httpx.AsyncClient) -> Dict[str, Any]:
    response = await _get(client, "stooq", STOOQ_SPX_URL)
    return {"price": parse_stooq_close(response.text), "marketCap": None, "marketCapProxy": "SPY"}


MARKET_FETCHERS = {
    "btc": fetch_btc_market,
    "gold": fetch_gold_market,
    "sp500": fetch_sp500_market,
}
