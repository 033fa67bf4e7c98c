"""Registry of action handlers keyed by action type tag."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from ..collaborators import (
    DocumentGenerator,
    IntegrationConnector,
    NotificationSender,
    UserDirectory,
)
from ..config import IntegrationConfig
from .approval import ApprovalHandler
from .assignment import AssignmentHandler
from .base import ActionHandler
from .document import DocumentHandler
from .integration import IntegrationHandler
from .notification import NotificationHandler
from .wait import WaitHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Maps action type tags to handlers. New tags may be added at any time."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, handler: ActionHandler, type: Optional[str] = None) -> ActionHandler:
        tag = type or handler.type
        if not tag:
            raise ValueError("Handler has no action type")
        if tag in self._handlers:
            logger.info(f"Replacing handler for action type {tag}")
        self._handlers[tag] = handler
        return handler

    def get(self, tag: str) -> Optional[ActionHandler]:
        return self._handlers.get(tag)

    def knows(self, tag: str) -> bool:
        return tag in self._handlers

    @property
    def tags(self) -> List[str]:
        return sorted(self._handlers)


def default_registry(
    notifier: NotificationSender,
    directory: UserDirectory,
    documents: DocumentGenerator,
    connector: IntegrationConnector,
    integrations: Optional[Mapping[str, IntegrationConfig]] = None,
    max_reminders: int = 3,
    approval_timeout_hours: float = 24.0,
) -> HandlerRegistry:
    """Registry with the six built-in handlers."""
    registry = HandlerRegistry()
    registry.register(
        ApprovalHandler(
            notifier,
            directory,
            max_reminders=max_reminders,
            default_timeout_hours=approval_timeout_hours,
        )
    )
    registry.register(NotificationHandler(notifier, max_reminders=max_reminders))
    registry.register(AssignmentHandler(directory, notifier))
    registry.register(DocumentHandler(documents))
    registry.register(IntegrationHandler(connector, integrations))
    registry.register(WaitHandler())
    return registry
