from __future__ import annotations

from collections.abc import Iterator

import pytest
from fakes import FakeArticleFetcher, FakeModelClient
from fastapi.testclient import TestClient

from dispatch_api.app.config import Settings
from dispatch_api.app.memory import InMemoryDispatchStorage


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, database_url="postgresql://unused", gemini_api_key="test-key")


@pytest.fixture
def storage() -> InMemoryDispatchStorage:
    return InMemoryDispatchStorage()


@pytest.fixture
def model_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def article_fetcher() -> FakeArticleFetcher:
    return FakeArticleFetcher(text="Article body about local elections.")


@pytest.fixture
def client(
    settings: Settings,
    storage: InMemoryDispatchStorage,
    model_client: FakeModelClient,
    article_fetcher: FakeArticleFetcher,
) -> Iterator[TestClient]:
    from dispatch_api.main import create_app

    app = create_app(
        storage=storage,
        settings_override=settings,
        model_client=model_client,
        content_fetcher=article_fetcher,
    )
    with TestClient(app) as test_client:
        yield test_client
