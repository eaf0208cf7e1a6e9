import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .errors import ConfigurationError
from .llm import ChatClient
from .orchestrator import DataStream, ManualToolStream, ToolCallingStream
from .registry import ClientCache, ModelResolver, available_models, tool_call_model_id
from .schemas import ChatRequest, ModelDescriptor, OpenAICompatibleSettings
from .settings_store import SettingsStore
from .stock import get_demo_quote
from .tavily import TavilyClient
from .tools import ToolContext, ToolRegistry, default_tools

DEFAULT_MODEL = ModelDescriptor(
    id="gpt-4o-mini",
    name="GPT-4o mini",
    provider="OpenAI",
    providerId="openai",
    enabled=True,
    toolCallType="native",
)
HEALTH_TIMEOUT_S = 10.0

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_resolver(request: Request) -> ModelResolver:
    return request.app.state.resolver


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_tool_context(request: Request) -> ToolContext:
    return request.app.state.tool_ctx


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_user_id(request: Request) -> str:
    return request.cookies.get("user-id") or "anonymous"


def parse_model_cookie(raw: Optional[str]) -> Optional[ModelDescriptor]:
    """Decode the selectedModel cookie; an unreadable cookie falls back to the default model."""
    if not raw:
        return None
    for candidate in (raw, unquote(raw)):
        try:
            return ModelDescriptor.model_validate(json.loads(candidate))
        except (ValueError, ValidationError):
            continue
    logger.warning("Failed to parse selected model cookie")
    return None


async def run_health_check(cfg: OpenAICompatibleSettings) -> Dict[str, Any]:
    """Probe /models and a one-token chat completion against a compatible endpoint."""
    client = ChatClient(cfg.base_url, api_key=cfg.api_key, timeout=HEALTH_TIMEOUT_S)
    results: List[Dict[str, Any]] = []
    try:
        start = time.monotonic()
        model = cfg.model
        try:
            data = await client.list_models()
            ids = [m.get("id") for m in data.get("data", []) if m.get("id")]
            model = model or (ids[0] if ids else "")
            results.append(
                {
                    "endpoint": "models",
                    "success": True,
                    "details": {"modelCount": len(ids), "models": ids[:5]},
                    "responseTime": int((time.monotonic() - start) * 1000),
                }
            )
        except (httpx.HTTPError, ValueError) as exc:
            results.append(
                {
                    "endpoint": "models",
                    "success": False,
                    "error": str(exc) or exc.__class__.__name__,
                    "responseTime": int((time.monotonic() - start) * 1000),
                }
            )

        start = time.monotonic()
        if not model:
            results.append({"endpoint": "chat_completions", "success": False, "error": "No model available for testing"})
        else:
            ok, detail = await client.check_chat(model, timeout=HEALTH_TIMEOUT_S)
            entry: Dict[str, Any] = {
                "endpoint": "chat_completions",
                "success": ok,
                "responseTime": int((time.monotonic() - start) * 1000),
            }
            if not ok:
                entry["error"] = detail
            results.append(entry)
    finally:
        await client.close()

    passed = sum(1 for r in results if r["success"])
    overall = passed == len(results)
    if overall:
        summary = "All endpoint tests passed. Your OpenAI-compatible endpoint is working correctly."
    else:
        failed = ", ".join(r["endpoint"] for r in results if not r["success"])
        summary = f"{passed}/{len(results)} endpoint tests passed. Failed: {failed}."
    return {"overall": overall, "results": results, "summary": summary}


router = APIRouter()


@router.post("/chat")
@router.post("/api/chat")
async def chat(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    resolver: ModelResolver = Depends(get_resolver),
    tools: ToolRegistry = Depends(get_tool_registry),
    tool_ctx: ToolContext = Depends(get_tool_context),
    user_id: str = Depends(get_user_id),
):
    try:
        referer = request.headers.get("referer") or ""
        if "/share/" in referer:
            return PlainTextResponse("Chat API is not available on share pages", status_code=403)

        body = await request.json()
        chat_request = ChatRequest.model_validate(body)
        descriptor = parse_model_cookie(request.cookies.get("selectedModel")) or DEFAULT_MODEL
        search_mode = request.cookies.get("search-mode") == "true"
        logger.info("Chat request: model=%s search_mode=%s chat=%s", descriptor.model_id, search_mode, chat_request.id)

        model = resolver.resolve(descriptor.model_id, descriptor)
        common = dict(
            descriptor=descriptor,
            messages=chat_request.messages,
            chat_id=chat_request.id,
            user_id=user_id,
            search_mode=search_mode,
            tools=tools,
            tool_ctx=tool_ctx,
            settings=settings,
            db=db,
        )
        if model.capabilities.supports_native_tools:
            stream = ToolCallingStream(model=model, **common)
        else:
            tool_model = resolver.resolve(tool_call_model_id(descriptor), descriptor)
            stream = ManualToolStream(model=model, tool_model=tool_model, **common)

        data_stream = DataStream()
        return StreamingResponse(
            data_stream.run(stream.execute),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
    except ConfigurationError as exc:
        logger.warning("Rejected chat request: %s (%s)", exc.error, exc.details)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)
    except Exception:
        logger.exception("API route error")
        return PlainTextResponse("Error processing your request", status_code=500)


@router.get("/stock")
@router.get("/api/stock")
async def stock(symbol: Optional[str] = None):
    if not symbol or not symbol.strip():
        return JSONResponse({"success": False, "error": "Stock symbol is required"}, status_code=400)
    try:
        quote = get_demo_quote(symbol)
    except Exception:
        logger.exception("Stock API error")
        return JSONResponse({"success": False, "error": "Failed to fetch stock data"}, status_code=500)
    if quote is None:
        return JSONResponse({"success": False, "error": "Stock data not found"}, status_code=404)
    return {"success": True, "data": quote}


@router.get("/api/models")
async def list_models(resolver: ModelResolver = Depends(get_resolver)):
    return {"models": await available_models(resolver)}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    merged = settings.model_dump()
    for key, value in payload.items():
        if key not in merged:
            continue
        # The masked placeholder from GET /settings means "unchanged".
        if value == "********":
            continue
        merged[key] = value
    try:
        new_settings = AppSettings(**merged)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors())
    save_settings(new_settings, config_path)
    request.app.state.settings = new_settings
    request.app.state.resolver.settings = new_settings
    request.app.state.tool_ctx.settings = new_settings
    request.app.state.tavily_client.api_key = new_settings.tavily_api_key
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/settings/openai-compatible")
async def get_compatible_settings(store: SettingsStore = Depends(get_settings_store)):
    return store.get_openai_compatible_settings().to_safe_dict()


@router.put("/api/settings/openai-compatible")
async def save_compatible_settings(
    payload: OpenAICompatibleSettings,
    store: SettingsStore = Depends(get_settings_store),
):
    if payload.api_key == "********":
        payload = payload.model_copy(update={"api_key": store.get_openai_compatible_settings().api_key})
    store.save_openai_compatible_settings(payload)
    return {"ok": True, "settings": payload.to_safe_dict()}


@router.delete("/api/settings/openai-compatible")
async def clear_compatible_settings(store: SettingsStore = Depends(get_settings_store)):
    store.clear_openai_compatible_settings()
    return {"ok": True}


@router.post("/api/settings/openai-compatible/health")
async def compatible_health(
    payload: Optional[OpenAICompatibleSettings] = None,
    store: SettingsStore = Depends(get_settings_store),
):
    cfg = payload if payload is not None and payload.base_url else store.get_openai_compatible_settings()
    if not cfg.base_url:
        raise HTTPException(status_code=400, detail="baseURL is required")
    return await run_health_check(cfg)


@router.get("/api/chats")
async def list_chats(
    limit: int = 50,
    db: Database = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return {"chats": await db.list_chats(user_id, limit=limit)}


@router.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str, db: Database = Depends(get_db), user_id: str = Depends(get_user_id)):
    chat_row = await db.get_chat(chat_id, user_id)
    if not chat_row:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat_row


@router.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str, db: Database = Depends(get_db), user_id: str = Depends(get_user_id)):
    if not await db.delete_chat(chat_id, user_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"ok": True}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    client_cache: Optional[ClientCache] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    settings_store: Optional[SettingsStore] = None,
    tools: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.client_cache.close()
            await app.state.http_client.aclose()
            await app.state.tavily_client.close()

    app = FastAPI(title="Aham Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db if db is not None else Database(settings.database_path)
    app.state.client_cache = (
        client_cache if client_cache is not None else ClientCache(timeout=settings.provider_timeout_s)
    )
    app.state.http_client = (
        http_client if http_client is not None else httpx.AsyncClient(timeout=settings.tool_timeout_s)
    )
    app.state.tavily_client = (
        tavily_client
        if tavily_client is not None
        else TavilyClient(settings.tavily_api_key, timeout=settings.tool_timeout_s)
    )
    app.state.settings_store = (
        settings_store if settings_store is not None else SettingsStore(Path(settings.settings_store_path))
    )
    app.state.resolver = ModelResolver(settings, app.state.client_cache, app.state.settings_store)
    app.state.tools = tools if tools is not None else ToolRegistry(default_tools())
    app.state.tool_ctx = ToolContext(app.state.http_client, app.state.tavily_client, settings)
    app.state.config_path = config_path if config_path is not None else CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("AHAM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "ahamchat.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
