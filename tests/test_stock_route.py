from datetime import date

import pytest

from ahamchat.stock import demo_price_history, get_demo_quote


@pytest.mark.asyncio
async def test_stock_requires_symbol(client):
    res = await client.get("/stock")
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Stock symbol is required"}

    blank = await client.get("/stock", params={"symbol": "  "})
    assert blank.status_code == 400


@pytest.mark.asyncio
async def test_unknown_symbol_is_404(client):
    res = await client.get("/api/stock", params={"symbol": "ZZZZ"})
    assert res.status_code == 404
    assert res.json() == {"success": False, "error": "Stock data not found"}


@pytest.mark.asyncio
async def test_known_symbol_returns_quote(client):
    res = await client.get("/stock", params={"symbol": "aapl"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    data = body["data"]
    assert data["symbol"] == "AAPL"
    assert data["name"] == "Apple Inc."
    assert len(data["priceHistory"]) == 30

    again = await client.get("/api/stock", params={"symbol": "AAPL"})
    assert again.json()["data"]["priceHistory"] == data["priceHistory"]


def test_demo_history_is_stable_and_ends_today():
    today = date(2026, 3, 15)
    first = demo_price_history("MSFT", 348.56, today=today)
    second = demo_price_history("MSFT", 348.56, today=today)
    assert first == second
    assert first[-1]["date"] == "2026-03-15"
    assert first[0]["date"] == "2026-02-14"
    assert get_demo_quote("nope") is None
