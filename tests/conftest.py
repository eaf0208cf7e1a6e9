from pathlib import Path
from typing import Optional

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from ahamchat.config import AppSettings
from ahamchat.main import create_app
from ahamchat.registry import ClientCache
from ahamchat.settings_store import SettingsStore
from tests.fakes import FakeChatClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        settings_store_path=str(tmp_path / "settings.json"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_chat: Optional[FakeChatClient] = None,
        fake_tavily: Optional[FakeTavilyClient] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        chat_client = fake_chat or FakeChatClient()
        created = []

        def client_factory(base_url, **kwargs):
            created.append(base_url)
            return chat_client

        client_cache = ClientCache(factory=client_factory)
        client_cache.created = created  # type: ignore[attr-defined]
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            client_cache=client_cache,
            http_client=httpx.AsyncClient(),
            tavily_client=tavily_client,
            settings_store=SettingsStore(Path(settings.settings_store_path)),
            config_path=cfg_path,
        )
        return app, cfg_path, chat_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, chat_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_chat = chat_client  # type: ignore[attr-defined]
            yield http_client
