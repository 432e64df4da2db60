"""Application factory and lifespan tests."""

from pathlib import Path

import httpx
import pytest
from starlette.requests import Request

import app.main as main
from app.api.deps import get_crm_client
from app.core.config import settings
from app.rules.loader import RULESETS_DIR, RulesetLoader
from app.services.crm import HubSpotClient, NullCRMClient


class FakeEngine:
    """Stands in for the module engine so shutdown does not touch a database."""

    def __init__(self) -> None:
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def fake_engine(monkeypatch: pytest.MonkeyPatch) -> FakeEngine:
    engine = FakeEngine()
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(settings, "init_db_on_startup", False)
    return engine


class TestLoadSeeds:
    """Seed preloading at startup."""

    def test_bundled_seed_is_loaded(self) -> None:
        seeds = main.load_seeds(RulesetLoader())

        assert "example-screening" in seeds
        assert len(seeds["example-screening"]) == 64

    def test_invalid_seed_is_left_out(self, tmp_path: Path) -> None:
        good = (RULESETS_DIR / "example-screening-v1.yaml").read_text(encoding="utf-8")
        (tmp_path / "a-good.yaml").write_text(good, encoding="utf-8")
        (tmp_path / "b-missing-form.yaml").write_text("id: broken\nrules: []\n", encoding="utf-8")
        (tmp_path / "c-not-yaml.yaml").write_text("id: [unclosed\n", encoding="utf-8")

        seeds = main.load_seeds(RulesetLoader(tmp_path))

        assert list(seeds) == ["example-screening"]


class TestLifespan:
    """Startup and shutdown wiring."""

    @pytest.mark.asyncio
    async def test_state_without_crm(self, fake_engine: FakeEngine) -> None:
        application = main.create_app()

        async with main.lifespan(application):
            assert isinstance(application.state.crm_client, NullCRMClient)
            assert "example-screening" in application.state.seeds
            assert isinstance(application.state.ruleset_loader, RulesetLoader)
            assert not fake_engine.disposed

        assert fake_engine.disposed

    @pytest.mark.asyncio
    async def test_crm_client_built_from_token(
        self, fake_engine: FakeEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "hubspot_access_token", "pat-test")
        application = main.create_app()

        async with main.lifespan(application):
            client = application.state.crm_client
            assert isinstance(client, HubSpotClient)
            assert client.access_token == "pat-test"

    @pytest.mark.asyncio
    async def test_requests_share_startup_crm_client(self, fake_engine: FakeEngine) -> None:
        application = main.create_app()

        async with main.lifespan(application):
            request = Request({"type": "http", "app": application})
            assert get_crm_client(request) is application.state.crm_client

    def test_crm_client_built_per_request_without_lifespan(self) -> None:
        application = main.create_app()
        request = Request({"type": "http", "app": application})

        assert isinstance(get_crm_client(request), NullCRMClient)


class TestCreateApp:
    """Routes mounted by the factory."""

    @pytest.mark.asyncio
    async def test_root_and_api_mounted(self) -> None:
        application = main.create_app()
        paths = {route.path for route in application.routes}

        assert "/" in paths
        assert "/api/v1/webhooks/typeform" in paths

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=application),
            base_url="http://test",
        ) as test_client:
            response = await test_client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == main.SERVICE_NAME
