import random
from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from riskradar.config import AppSettings
from riskradar.main import create_app
from tests.fakes import FakeGeminiClient, RecordingSleep


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key="test-key",
        gemini_model="test-model",
        gemini_base_url="https://gemini.test/v1beta",
        report_cooldown_s=10.0,
        history_cooldown_s=20.0,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings() -> AppSettings:
    return make_settings()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gemini: FakeGeminiClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        gemini_client = fake_gemini or FakeGeminiClient(api_key=settings.gemini_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            gemini_client=gemini_client,
            config_path=cfg_path,
            sleep=RecordingSleep(),
            rng=random.Random(7),
        )
        return app, cfg_path, gemini_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gemini_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini_client  # type: ignore[attr-defined]
            yield http_client
