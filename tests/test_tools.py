import json
from urllib.parse import unquote

import httpx
import pytest
import respx
from httpx import Response

from ahamchat.config import AppSettings
from ahamchat.tools import (
    ChartGenerationTool,
    ImageGenerationTool,
    QuestionTool,
    RetrieveTool,
    SearchTool,
    StockDataTool,
    ToolContext,
    ToolRegistry,
    VideoSearchTool,
    WikipediaSearchTool,
    default_tools,
)
from tests.fakes import FakeTavilyClient


@pytest.fixture
async def ctx():
    http = httpx.AsyncClient(timeout=5.0)
    context = ToolContext(http, FakeTavilyClient(api_key="tvly-test"), AppSettings(serper_api_key="serper-key"))
    try:
        yield context
    finally:
        await http.aclose()


@pytest.mark.asyncio
async def test_image_tool_builds_pollinations_urls(ctx):
    result = await ImageGenerationTool().run({"prompt": "a red fox"}, ctx)
    assert result["success"] is True
    assert result["selected"] == "flux"
    urls = {img["model"]: img["url"] for img in result["images"]}
    assert urls["flux"].startswith("https://image.pollinations.ai/prompt/a%20red%20fox?")
    assert "model=flux" in urls["flux"]
    assert "width=1024" in urls["flux"] and "height=1024" in urls["flux"]
    assert "enhance=false" in urls["flux"]
    assert "model=turbo" in urls["turbo"]


@pytest.mark.asyncio
async def test_image_tool_schema_violation_is_failure(ctx):
    result = await ImageGenerationTool().run({"model": "flux"}, ctx)
    assert result["success"] is False
    assert "prompt" in result["error"]

    bad_model = await ImageGenerationTool().run({"prompt": "x", "model": "dalle"}, ctx)
    assert bad_model["success"] is False


@pytest.mark.asyncio
async def test_chart_tool_encodes_config(ctx):
    args = {
        "type": "bar",
        "title": "Sales",
        "data": {"labels": ["Q1", "Q2"], "datasets": [{"label": "2024", "data": [1, 2]}]},
    }
    result = await ChartGenerationTool().run(args, ctx)
    assert result["success"] is True
    chart = result["charts"][0]
    assert chart["url"].startswith("https://quickchart.io/chart?c=")
    assert chart["url"].endswith("&width=800&height=600&backgroundColor=white")
    encoded = chart["url"][len("https://quickchart.io/chart?c="):].split("&width=")[0]
    config = json.loads(unquote(encoded))
    assert config["type"] == "bar"
    assert config["options"]["plugins"]["title"] == {"display": True, "text": "Sales"}
    assert config["data"]["datasets"][0]["data"] == [1.0, 2.0]
    assert chart["sandboxUrl"].startswith("https://quickchart.io/sandbox/#")


@pytest.mark.asyncio
async def test_question_tool_echoes_structured_question(ctx):
    result = await QuestionTool().run(
        {
            "question": "Which city?",
            "options": [{"value": "paris", "label": "Paris"}],
            "allowsInput": True,
            "inputLabel": "Other",
        },
        ctx,
    )
    assert result["success"] is True
    assert result["question"] == "Which city?"
    assert result["allowsInput"] is True
    assert result["options"] == [{"value": "paris", "label": "Paris"}]
    assert QuestionTool.terminal is True


@pytest.mark.asyncio
async def test_search_tool_uses_tavily(ctx):
    result = await SearchTool().run({"query": "python"}, ctx)
    assert result["success"] is True
    assert result["number_of_results"] == 1
    assert result["images"] == [{"url": "https://example.com/a.png", "description": ""}]
    assert ctx.tavily.search_calls[0]["query"] == "python"


@pytest.mark.asyncio
async def test_search_tool_failures_are_structured():
    http = httpx.AsyncClient()
    try:
        unconfigured = ToolContext(http, FakeTavilyClient(api_key=None), AppSettings())
        result = await SearchTool().run({"query": "python"}, unconfigured)
        assert result["success"] is False
        assert "TAVILY_API_KEY" in result["error"]

        erroring = ToolContext(
            http, FakeTavilyClient(api_key="k", search_response={"error": "http_status", "status_code": 500}), AppSettings()
        )
        result = await SearchTool().run({"query": "python"}, erroring)
        assert result["success"] is False
        assert "500" in result["error"]
    finally:
        await http.aclose()


@pytest.mark.asyncio
async def test_retrieve_prefers_jina_when_configured(ctx):
    result = await RetrieveTool().run({"url": "https://example.com"}, ctx)
    assert result["success"] is True
    assert result["results"][0]["content"] == "Extracted page text"

    ctx.settings = AppSettings(jina_api_key="jina-key")
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(url__startswith="https://r.jina.ai/").mock(
            return_value=Response(200, json={"data": {"title": "Example", "content": "y" * 20000, "url": "https://example.com"}})
        )
        result = await RetrieveTool().run({"url": "https://example.com"}, ctx)
    assert result["success"] is True
    assert result["results"][0]["title"] == "Example"
    assert len(result["results"][0]["content"]) == 10000


@pytest.mark.asyncio
async def test_video_search_calls_serper(ctx):
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:
        def handler(request):
            captured["json"] = json.loads(request.content.decode("utf-8"))
            captured["key"] = request.headers.get("X-API-KEY")
            return Response(200, json={"videos": [{"title": "v"}], "searchParameters": {"q": "cats"}})

        respx_mock.post("https://google.serper.dev/videos").mock(side_effect=handler)
        result = await VideoSearchTool().run({"query": "cats"}, ctx)
    assert result["success"] is True
    assert result["videos"] == [{"title": "v"}]
    assert captured == {"json": {"q": "cats"}, "key": "serper-key"}


@pytest.mark.asyncio
async def test_video_search_http_error_becomes_failure(ctx):
    with respx.mock() as respx_mock:
        respx_mock.post("https://google.serper.dev/videos").mock(return_value=Response(502))
        result = await VideoSearchTool().run({"query": "cats"}, ctx)
    assert result["success"] is False
    assert result["error"]


@pytest.mark.asyncio
async def test_wikipedia_search_caps_limit(ctx):
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:
        def handler(request):
            captured["params"] = dict(request.url.params)
            captured["ua"] = request.headers.get("User-Agent")
            return Response(
                200,
                json={
                    "pages": [
                        {
                            "id": 1,
                            "key": "Alan_Turing",
                            "title": "Alan Turing",
                            "excerpt": "English mathematician",
                            "description": "Mathematician",
                            "thumbnail": {"url": "//img/turing.jpg"},
                        }
                    ]
                },
            )

        respx_mock.get(url__startswith="https://api.wikimedia.org/core/v1/wikipedia/en/search/page").mock(
            side_effect=handler
        )
        result = await WikipediaSearchTool().run({"query": "Turing", "limit": 50}, ctx)
    assert captured["params"] == {"q": "Turing", "limit": "10"}
    assert captured["ua"].startswith("Research-Assistant")
    assert result["success"] is True
    article = result["articles"][0]
    assert article["url"] == "https://en.wikipedia.org/wiki/Alan_Turing"
    assert article["pageid"] == 1
    assert article["thumbnail"] == "//img/turing.jpg"


@pytest.mark.asyncio
async def test_wikipedia_http_failure_is_structured(ctx):
    with respx.mock() as respx_mock:
        respx_mock.get(url__startswith="https://api.wikimedia.org/").mock(side_effect=httpx.ConnectError("down"))
        result = await WikipediaSearchTool().run({"query": "Turing"}, ctx)
    assert result["success"] is False
    assert result["error"]


@pytest.mark.asyncio
async def test_stock_tool_reads_yahoo(ctx):
    chart = {
        "chart": {
            "result": [
                {
                    "meta": {
                        "regularMarketPrice": 110.0,
                        "previousClose": 100.0,
                        "longName": "Apple Inc.",
                        "regularMarketDayHigh": 111.0,
                        "regularMarketDayLow": 99.0,
                        "regularMarketVolume": 1000,
                    },
                    "timestamp": [1700000000, 1700086400],
                    "indicators": {"quote": [{"close": [100.0, None]}]},
                }
            ]
        }
    }
    summary = {"quoteSummary": {"result": [{"summaryDetail": {"marketCap": {"raw": 123}}}]}}
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(url__startswith="https://query1.finance.yahoo.com/v8/finance/chart/AAPL").mock(
            return_value=Response(200, json=chart)
        )
        respx_mock.get(url__startswith="https://query1.finance.yahoo.com/v10/finance/quoteSummary/AAPL").mock(
            return_value=Response(200, json=summary)
        )
        result = await StockDataTool().run({"symbol": "aapl"}, ctx)
    assert result["success"] is True
    data = result["data"]
    assert data["symbol"] == "AAPL"
    assert data["change"] == 10.0
    assert data["changePercent"] == 10.0
    assert data["marketCap"] == 123
    assert len(data["priceHistory"]) == 1


@pytest.mark.asyncio
async def test_stock_tool_unknown_symbol(ctx):
    with respx.mock() as respx_mock:
        respx_mock.get(url__startswith="https://query1.finance.yahoo.com/v8/finance/chart/").mock(
            return_value=Response(404, json={"chart": {"result": None}})
        )
        result = await StockDataTool().run({"symbol": "zzzz"}, ctx)
    assert result == {"success": False, "error": "Stock symbol ZZZZ not found"}


@pytest.mark.asyncio
async def test_registry_schemas_and_unknown_tool(ctx):
    registry = ToolRegistry(default_tools())
    assert registry.names() == [
        "search",
        "retrieve",
        "videoSearch",
        "ask_question",
        "generate_image",
        "generate_chart",
        "stock_data",
        "wikipedia_search",
    ]
    schemas = registry.openai_tools(["ask_question", "missing"])
    assert len(schemas) == 1
    params = schemas[0]["function"]["parameters"]
    assert "allowsInput" in params["properties"]
    assert schemas[0]["function"]["name"] == "ask_question"
    assert registry.is_terminal("ask_question")
    assert not registry.is_terminal("search")

    result = await registry.execute({"tool_call_id": "c1", "tool_name": "nope", "args": {}}, ctx)
    assert result == {"success": False, "error": "Unknown tool: nope"}
