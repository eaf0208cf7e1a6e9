import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal, Optional, Tuple, Type
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import AppSettings
from .errors import ToolExecutionError
from .stock import fetch_yahoo_quote
from .tavily import TavilyClient, normalize_images, normalize_results

CONTENT_CHARACTER_LIMIT = 10000
JINA_READER_URL = "https://r.jina.ai/"
SERPER_VIDEOS_URL = "https://google.serper.dev/videos"
POLLINATIONS_URL = "https://image.pollinations.ai/prompt/"
QUICKCHART_URL = "https://quickchart.io/chart"
QUICKCHART_SANDBOX_URL = "https://quickchart.io/sandbox/#"
WIKIMEDIA_SEARCH_URL = "https://api.wikimedia.org/core/v1/wikipedia/{language}/search/page"
WIKIPEDIA_USER_AGENT = "Research-Assistant/1.0 (educational-use)"

logger = logging.getLogger("uvicorn.error")


def encode_uri_component(text: str) -> str:
    return quote(text, safe="!*'()")


class ToolContext:
    """Shared outbound resources for one request's tool calls."""

    def __init__(self, http: httpx.AsyncClient, tavily: TavilyClient, settings: AppSettings):
        self.http = http
        self.tavily = tavily
        self.settings = settings


class Tool:
    name: str = ""
    description: str = ""
    args_model: Type[BaseModel] = BaseModel
    # A terminal tool ends the turn: the user has to answer before the model continues.
    terminal: bool = False

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(by_alias=True),
            },
        }

    async def execute(self, args: Any, ctx: ToolContext) -> Dict[str, Any]:
        raise NotImplementedError

    async def run(self, raw_args: Optional[Dict[str, Any]], ctx: ToolContext) -> Dict[str, Any]:
        try:
            args = self.args_model.model_validate(raw_args or {})
            return await self.execute(args, ctx)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", self.name, exc)
            return {"success": False, "error": str(exc) or exc.__class__.__name__}


class SearchArgs(BaseModel):
    query: str = Field(description="The query to search for")
    max_results: int = Field(default=20, description="The maximum number of results to return")
    search_depth: Literal["basic", "advanced"] = Field(default="basic", description="The depth of the search")
    include_domains: List[str] = Field(default_factory=list, description="Domains to restrict the search to")
    exclude_domains: List[str] = Field(default_factory=list, description="Domains to exclude from the search")


class SearchTool(Tool):
    name = "search"
    description = "Search the web for information"
    args_model = SearchArgs

    async def execute(self, args: SearchArgs, ctx: ToolContext) -> Dict[str, Any]:
        if not ctx.tavily.enabled:
            raise ToolExecutionError("Web search is not configured (missing TAVILY_API_KEY)")
        resp = await ctx.tavily.search(
            args.query,
            search_depth=args.search_depth,
            max_results=args.max_results,
            include_domains=args.include_domains,
            exclude_domains=args.exclude_domains,
        )
        if resp.get("error"):
            raise ToolExecutionError(f"Search failed: {resp['error']} {resp.get('status_code') or ''}".strip())
        results = normalize_results(resp.get("results"))
        return {
            "success": True,
            "query": args.query,
            "results": results,
            "images": normalize_images(resp.get("images")),
            "number_of_results": len(results),
        }


class RetrieveArgs(BaseModel):
    url: str = Field(description="The url to retrieve")


class RetrieveTool(Tool):
    name = "retrieve"
    description = "Retrieve content from the web"
    args_model = RetrieveArgs

    async def _jina(self, url: str, ctx: ToolContext) -> Dict[str, Any]:
        resp = await ctx.http.get(
            JINA_READER_URL + url,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {ctx.settings.jina_api_key}",
                "X-With-Generated-Alt": "true",
            },
        )
        resp.raise_for_status()
        data = resp.json().get("data") or {}
        if not data:
            raise ToolExecutionError(f"No content retrieved from {url}")
        content = (data.get("content") or "")[:CONTENT_CHARACTER_LIMIT]
        return {"title": data.get("title") or "", "content": content, "url": data.get("url") or url}

    async def _tavily(self, url: str, ctx: ToolContext) -> Dict[str, Any]:
        if not ctx.tavily.enabled:
            raise ToolExecutionError("Retrieval is not configured (missing JINA_API_KEY or TAVILY_API_KEY)")
        resp = await ctx.tavily.extract([url])
        if resp.get("error"):
            raise ToolExecutionError(f"Retrieve failed: {resp['error']}")
        results = resp.get("results") or []
        if not results:
            raise ToolExecutionError(f"No content retrieved from {url}")
        content = (results[0].get("raw_content") or "")[:CONTENT_CHARACTER_LIMIT]
        return {"title": content[:80], "content": content, "url": results[0].get("url") or url}

    async def execute(self, args: RetrieveArgs, ctx: ToolContext) -> Dict[str, Any]:
        if ctx.settings.jina_api_key:
            page = await self._jina(args.url, ctx)
        else:
            page = await self._tavily(args.url, ctx)
        return {"success": True, "query": "", "results": [page], "images": []}


class VideoSearchArgs(BaseModel):
    query: str = Field(description="The query to search for videos")


class VideoSearchTool(Tool):
    name = "videoSearch"
    description = "Search for videos from YouTube"
    args_model = VideoSearchArgs

    async def execute(self, args: VideoSearchArgs, ctx: ToolContext) -> Dict[str, Any]:
        if not ctx.settings.serper_api_key:
            raise ToolExecutionError("Video search is not configured (missing SERPER_API_KEY)")
        resp = await ctx.http.post(
            SERPER_VIDEOS_URL,
            json={"q": args.query},
            headers={"X-API-KEY": ctx.settings.serper_api_key, "Content-Type": "application/json"},
        )
        resp.raise_for_status()
        data = resp.json()
        return {
            "success": True,
            "query": args.query,
            "videos": data.get("videos") or [],
            "searchParameters": data.get("searchParameters") or {"q": args.query},
        }


class QuestionOption(BaseModel):
    value: str = Field(description="Option identifier (always in English)")
    label: str = Field(description="Display text for the option")


class QuestionArgs(BaseModel):
    question: str = Field(description="The main question to ask the user")
    options: List[QuestionOption] = Field(description="List of predefined options")
    allows_input: bool = Field(alias="allowsInput", description="Whether to allow free-form text input")
    input_label: Optional[str] = Field(default=None, alias="inputLabel", description="Label for free-form input field")
    input_placeholder: Optional[str] = Field(
        default=None, alias="inputPlaceholder", description="Placeholder text for input field"
    )

    model_config = ConfigDict(populate_by_name=True)


class QuestionTool(Tool):
    name = "ask_question"
    description = "Ask a clarifying question with multiple options when more information is needed"
    args_model = QuestionArgs
    terminal = True

    async def execute(self, args: QuestionArgs, ctx: ToolContext) -> Dict[str, Any]:
        return {"success": True, **args.model_dump(by_alias=True, exclude_none=True)}


class ImageArgs(BaseModel):
    prompt: str = Field(description="The text description of the image to generate")
    model: Literal["flux", "turbo"] = Field(default="flux", description="The model to use for generation")
    width: int = Field(default=1024, description="Width of the image in pixels")
    height: int = Field(default=1024, description="Height of the image in pixels")
    enhance: bool = Field(default=False, description="Whether to enhance the prompt using LLM")

    model_config = {"protected_namespaces": ()}


def image_url(prompt: str, model: str, width: int, height: int, enhance: bool) -> str:
    params = urlencode(
        {
            "model": model,
            "width": width,
            "height": height,
            "nologo": "true",
            "enhance": "true" if enhance else "false",
        }
    )
    return f"{POLLINATIONS_URL}{encode_uri_component(prompt)}?{params}"


class ImageGenerationTool(Tool):
    name = "generate_image"
    description = "Generate an image based on a text description using Pollinations AI"
    args_model = ImageArgs

    async def execute(self, args: ImageArgs, ctx: ToolContext) -> Dict[str, Any]:
        # Both variants are returned so the client can offer a choice.
        images = [
            {
                "model": variant,
                "url": image_url(args.prompt, variant, args.width, args.height, args.enhance),
                "prompt": args.prompt,
                "width": args.width,
                "height": args.height,
            }
            for variant in ("flux", "turbo")
        ]
        return {"success": True, "selected": args.model, "images": images}


class ChartDataset(BaseModel):
    label: str = Field(description="Label for this dataset")
    data: List[float] = Field(description="The data values")
    background_color: Optional[List[str]] = Field(
        default=None, alias="backgroundColor", description="Background colors for each data point"
    )
    border_color: Optional[str] = Field(default=None, alias="borderColor", description="Border color for the dataset")
    fill: Optional[bool] = Field(default=None, description="Whether to fill the area under the line")

    model_config = ConfigDict(populate_by_name=True)


class ChartData(BaseModel):
    labels: List[str] = Field(description="Labels for the data points")
    datasets: List[ChartDataset] = Field(description="The datasets to display")


class ChartArgs(BaseModel):
    type: Literal["line", "bar", "pie", "doughnut", "radar", "scatter", "bubble", "polarArea"] = Field(
        description="The type of chart to generate"
    )
    title: str = Field(description="The title of the chart")
    data: ChartData = Field(description="The chart data")
    options: Dict[str, Any] = Field(default_factory=dict, description="Chart.js configuration options")
    width: int = Field(default=800, description="Width of the chart in pixels")
    height: int = Field(default=600, description="Height of the chart in pixels")


def chart_config(args: ChartArgs) -> Dict[str, Any]:
    options = dict(args.options or {})
    plugins = dict(options.get("plugins") or {})
    plugins["title"] = {"display": True, "text": args.title, **(plugins.get("title") or {})}
    options["plugins"] = plugins
    return {
        "type": args.type,
        "data": args.data.model_dump(by_alias=True, exclude_none=True),
        "options": options,
    }


class ChartGenerationTool(Tool):
    name = "generate_chart"
    description = "Generate charts and data visualizations using Chart.js"
    args_model = ChartArgs

    async def execute(self, args: ChartArgs, ctx: ToolContext) -> Dict[str, Any]:
        config = chart_config(args)
        encoded = encode_uri_component(json.dumps(config, separators=(",", ":")))
        url = f"{QUICKCHART_URL}?c={encoded}&width={args.width}&height={args.height}&backgroundColor=white"
        return {
            "success": True,
            "charts": [
                {
                    "type": args.type,
                    "url": url,
                    "sandboxUrl": QUICKCHART_SANDBOX_URL + encoded,
                    "title": args.title,
                    "width": args.width,
                    "height": args.height,
                    "config": config,
                }
            ],
        }


class StockArgs(BaseModel):
    symbol: str = Field(description="Stock symbol (e.g., AAPL, GOOGL, MSFT)")


class StockDataTool(Tool):
    name = "stock_data"
    description = "Get real-time stock data including price, change, volume, and historical data for any stock symbol"
    args_model = StockArgs

    async def execute(self, args: StockArgs, ctx: ToolContext) -> Dict[str, Any]:
        quote_data = await fetch_yahoo_quote(ctx.http, args.symbol)
        if quote_data is None:
            return {"success": False, "error": f"Stock symbol {args.symbol.strip().upper()} not found"}
        return {"success": True, "data": quote_data}


class WikipediaArgs(BaseModel):
    query: str = Field(description="The search query for Wikipedia articles")
    limit: int = Field(default=5, description="Number of articles to return (max 10)")
    language: str = Field(default="en", description="Language code for Wikipedia (e.g., en, es, fr)")


class WikipediaSearchTool(Tool):
    name = "wikipedia_search"
    description = "Search Wikipedia articles and get comprehensive information on topics for broad research"
    args_model = WikipediaArgs

    async def execute(self, args: WikipediaArgs, ctx: ToolContext) -> Dict[str, Any]:
        limit = max(1, min(args.limit, 10))
        resp = await ctx.http.get(
            WIKIMEDIA_SEARCH_URL.format(language=args.language),
            params={"q": args.query, "limit": limit},
            headers={"User-Agent": WIKIPEDIA_USER_AGENT},
        )
        if resp.status_code >= 400:
            raise ToolExecutionError(f"Wikipedia search failed: {resp.status_code}")
        pages = resp.json().get("pages") or []
        if not pages:
            return {"success": False, "error": f'No Wikipedia articles found for "{args.query}"'}
        articles = [
            {
                "title": page.get("title"),
                "description": page.get("description") or "",
                "extract": page.get("excerpt") or "",
                "url": f"https://{args.language}.wikipedia.org/wiki/{encode_uri_component(page.get('key') or '')}",
                "thumbnail": (page.get("thumbnail") or {}).get("url"),
                "pageid": page.get("id"),
            }
            for page in pages[:limit]
        ]
        return {
            "success": True,
            "query": args.query,
            "language": args.language,
            "total_results": len(pages),
            "articles": articles,
        }


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]):
        self.tools: Dict[str, Tool] = {tool.name: tool for tool in tools}

    def names(self) -> List[str]:
        return list(self.tools)

    def get(self, name: str) -> Optional[Tool]:
        return self.tools.get(name)

    def is_terminal(self, name: str) -> bool:
        tool = self.tools.get(name)
        return bool(tool and tool.terminal)

    def openai_tools(self, active: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        names = self.names() if active is None else [n for n in active if n in self.tools]
        return [self.tools[n].schema() for n in names]

    def describe(self, active: Optional[Iterable[str]] = None) -> str:
        names = self.names() if active is None else [n for n in active if n in self.tools]
        lines = []
        for name in names:
            tool = self.tools[name]
            params = json.dumps(tool.args_model.model_json_schema(by_alias=True).get("properties") or {})
            lines.append(f"- {name}: {tool.description}. Parameters: {params}")
        return "\n".join(lines)

    async def execute(self, call: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
        tool = self.tools.get(call.get("tool_name") or "")
        if tool is None:
            return {"success": False, "error": f"Unknown tool: {call.get('tool_name')}"}
        return await tool.run(call.get("args"), ctx)

    async def execute_many(
        self, calls: List[Dict[str, Any]], ctx: ToolContext
    ) -> AsyncIterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """Run calls concurrently, yielding (call, result) as each one completes.

        Cancelling the consumer leaves in-flight tasks running to completion.
        """
        tasks = {asyncio.ensure_future(self.execute(call, ctx)): call for call in calls}
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                yield tasks[task], task.result()


def default_tools() -> List[Tool]:
    return [
        SearchTool(),
        RetrieveTool(),
        VideoSearchTool(),
        QuestionTool(),
        ImageGenerationTool(),
        ChartGenerationTool(),
        StockDataTool(),
        WikipediaSearchTool(),
    ]
