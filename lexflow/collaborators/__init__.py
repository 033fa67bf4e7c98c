"""External collaborators consumed by action handlers."""

from __future__ import annotations

from .base import (
    DocumentGenerator,
    IntegrationConnector,
    IntegrationResponse,
    IntegrationTimeout,
    NotificationSender,
    UserDirectory,
)
from .http import HttpIntegrationConnector
from .inmemory import (
    InMemoryDocumentGenerator,
    InMemoryIntegrationConnector,
    InMemoryNotificationSender,
    StaticUserDirectory,
)

__all__ = [
    "DocumentGenerator",
    "IntegrationConnector",
    "IntegrationResponse",
    "IntegrationTimeout",
    "NotificationSender",
    "UserDirectory",
    "HttpIntegrationConnector",
    "InMemoryDocumentGenerator",
    "InMemoryIntegrationConnector",
    "InMemoryNotificationSender",
    "StaticUserDirectory",
]
