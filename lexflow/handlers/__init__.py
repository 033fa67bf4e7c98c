"""Action handlers and the dispatcher that runs them."""

from __future__ import annotations

from .approval import ApprovalHandler
from .assignment import AssignmentHandler
from .base import ActionContext, ActionHandler, BaseActionHandler
from .dispatcher import ActionDispatcher
from .document import DocumentHandler
from .integration import IntegrationHandler
from .notification import NotificationHandler
from .registry import HandlerRegistry, default_registry
from .wait import WaitHandler

__all__ = [
    "ActionContext",
    "ActionDispatcher",
    "ActionHandler",
    "ApprovalHandler",
    "AssignmentHandler",
    "BaseActionHandler",
    "DocumentHandler",
    "HandlerRegistry",
    "IntegrationHandler",
    "NotificationHandler",
    "WaitHandler",
    "default_registry",
]
