import pytest

from lexflow.collaborators import (
    InMemoryDocumentGenerator,
    InMemoryIntegrationConnector,
    InMemoryNotificationSender,
    StaticUserDirectory,
)
from lexflow.config import LexflowConfig
from lexflow.persistence import InMemoryWorkflowRepository
from lexflow.service import build_service
from lexflow.utils import retry


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    """Retries run immediately in tests."""

    async def _no_sleep(attempt, base=1.5, jitter=0.5):
        return None

    monkeypatch.setattr(retry, "schedule_retry", _no_sleep)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def notifier():
    return InMemoryNotificationSender()


@pytest.fixture
def directory():
    return StaticUserDirectory()


@pytest.fixture
def documents():
    return InMemoryDocumentGenerator()


@pytest.fixture
def connector():
    return InMemoryIntegrationConnector()


@pytest.fixture
def config():
    return LexflowConfig()


@pytest.fixture
def service(config, repository, notifier, directory, documents, connector):
    return build_service(
        config=config,
        repository=repository,
        notifier=notifier,
        directory=directory,
        documents=documents,
        connector=connector,
    )
