import logging
import random
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from .errors import ToolExecutionError

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
YAHOO_SUMMARY_URL = (
    "https://query1.finance.yahoo.com/v10/finance/quoteSummary/{symbol}?modules=summaryDetail,defaultKeyStatistics"
)
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
HISTORY_DAYS = 30

logger = logging.getLogger("uvicorn.error")

DEMO_QUOTES: Dict[str, Dict[str, Any]] = {
    "AAPL": {
        "name": "Apple Inc.",
        "price": 175.84,
        "change": 2.34,
        "changePercent": 1.35,
        "high": 178.21,
        "low": 173.50,
        "volume": 54821000,
        "marketCap": 2759000000000,
    },
    "GOOGL": {
        "name": "Alphabet Inc.",
        "price": 134.25,
        "change": -1.45,
        "changePercent": -1.07,
        "high": 136.78,
        "low": 132.90,
        "volume": 28451000,
        "marketCap": 1685000000000,
    },
    "MSFT": {
        "name": "Microsoft Corporation",
        "price": 348.56,
        "change": 5.67,
        "changePercent": 1.65,
        "high": 351.23,
        "low": 345.12,
        "volume": 34567000,
        "marketCap": 2589000000000,
    },
    "TSLA": {
        "name": "Tesla, Inc.",
        "price": 238.45,
        "change": -8.34,
        "changePercent": -3.38,
        "high": 248.90,
        "low": 235.67,
        "volume": 89234000,
        "marketCap": 756000000000,
    },
    "NVDA": {
        "name": "NVIDIA Corporation",
        "price": 457.12,
        "change": 12.34,
        "changePercent": 2.77,
        "high": 465.78,
        "low": 445.23,
        "volume": 67890000,
        "marketCap": 1127000000000,
    },
}


def demo_price_history(symbol: str, current_price: float, days: int = HISTORY_DAYS, today: Optional[date] = None) -> List[dict]:
    """Random walk around the current price, seeded by symbol so responses are stable."""
    rng = random.Random(symbol)
    end = today or datetime.now(timezone.utc).date()
    price = current_price
    history = []
    for offset in range(days - 1, -1, -1):
        price = price * (1 + (rng.random() - 0.5) * 0.05)
        history.append({"date": (end - timedelta(days=offset)).isoformat(), "price": round(price, 2)})
    return history


def get_demo_quote(symbol: str) -> Optional[Dict[str, Any]]:
    cleaned = symbol.strip().upper()
    quote = DEMO_QUOTES.get(cleaned)
    if quote is None:
        return None
    return {
        "symbol": cleaned,
        **quote,
        "priceHistory": demo_price_history(cleaned, quote["price"]),
    }


def build_quote(symbol: str, chart_result: Dict[str, Any], market_cap: Optional[float] = None) -> Dict[str, Any]:
    meta = chart_result.get("meta") or {}
    quotes = (chart_result.get("indicators") or {}).get("quote") or [{}]
    closes = quotes[0].get("close") or []
    timestamps = chart_result.get("timestamp") or []

    current = meta.get("regularMarketPrice") or meta.get("previousClose") or 0.0
    previous = meta.get("previousClose") or current
    change = current - previous
    change_percent = (change / previous) * 100 if previous else 0.0

    history = []
    start = max(0, len(timestamps) - HISTORY_DAYS)
    for idx in range(start, len(timestamps)):
        if idx < len(closes) and closes[idx] is not None:
            day = datetime.fromtimestamp(timestamps[idx], tz=timezone.utc).date().isoformat()
            history.append({"date": day, "price": round(closes[idx], 2)})

    return {
        "symbol": symbol,
        "name": meta.get("longName") or meta.get("shortName") or symbol,
        "price": round(current, 2),
        "change": round(change, 2),
        "changePercent": round(change_percent, 2),
        "high": round(meta.get("regularMarketDayHigh") or current, 2),
        "low": round(meta.get("regularMarketDayLow") or current, 2),
        "volume": meta.get("regularMarketVolume") or 0,
        "marketCap": market_cap,
        "priceHistory": history or None,
    }


async def fetch_yahoo_quote(http: httpx.AsyncClient, symbol: str) -> Optional[Dict[str, Any]]:
    """Return a quote dict, or None when Yahoo does not know the symbol."""
    cleaned = symbol.strip().upper()
    headers = {"User-Agent": USER_AGENT}
    resp = await http.get(YAHOO_CHART_URL.format(symbol=cleaned), headers=headers)
    if resp.status_code == 404:
        return None
    if resp.status_code >= 400:
        raise ToolExecutionError(f"Failed to fetch quote data for {cleaned}")
    results = (resp.json().get("chart") or {}).get("result") or []
    if not results:
        return None

    market_cap = None
    try:
        summary = await http.get(YAHOO_SUMMARY_URL.format(symbol=cleaned), headers=headers)
        if summary.status_code < 400:
            detail = ((summary.json().get("quoteSummary") or {}).get("result") or [{}])[0]
            market_cap = ((detail.get("summaryDetail") or {}).get("marketCap") or {}).get("raw") or (
                (detail.get("defaultKeyStatistics") or {}).get("marketCap") or {}
            ).get("raw")
    except (httpx.HTTPError, ValueError) as exc:
        logger.info("Could not fetch additional data for %s: %s", cleaned, exc)

    return build_quote(cleaned, results[0], market_cap)
