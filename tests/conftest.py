from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatcore.config import AppSettings, DocumentSearchConfig, ModelProviderConfig, ResilienceConfig
from chatcore.db import Database
from chatcore.main import create_app
from chatcore.memory_store import MemoryStore
from chatcore.sessions import SessionRepository
from tests.fakes import FakeClassifier, FakeDocumentSearch, FakeModelClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        model=ModelProviderConfig(api_key="test-key", model_id="test-model", base_url="http://model.test/v1beta"),
        document_search=DocumentSearchConfig(base_url="http://docs.test", api_key="docs-key"),
        resilience=ResilienceConfig(retry_delay_s=0.0),
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        shutdown_drain_timeout_s=5.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "store.db"))
    await database.init()
    return database


@pytest.fixture
def memory(db: Database) -> MemoryStore:
    return MemoryStore(db)


@pytest.fixture
def sessions(db: Database) -> SessionRepository:
    return SessionRepository(db)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        fake_classifier: FakeClassifier | None = None,
        fake_search: FakeDocumentSearch | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model = fake_model or FakeModelClient()
        classifier = fake_classifier or FakeClassifier()
        search = fake_search or FakeDocumentSearch()
        app = create_app(settings, model_client=model, classifier=classifier, document_search=search)
        return app, model, classifier, search

    return _factory


@pytest.fixture
async def client(app_factory):
    app, model, classifier, search = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_model = model  # type: ignore[attr-defined]
            http_client.fake_classifier = classifier  # type: ignore[attr-defined]
            http_client.fake_search = search  # type: ignore[attr-defined]
            yield http_client
