"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .base import IntegrationResponse, IntegrationTimeout

logger = logging.getLogger(__name__)

CHANNELS = ("EMAIL", "SMS", "PUSH")


class InMemoryNotificationSender:
    """Records notifications instead of delivering them.

    ``failing_channels`` makes delivery on those channels report failure.
    """

    def __init__(self, failing_channels: Iterable[str] = ()) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.failing_channels = set(failing_channels)

    async def send(
        self,
        recipients: Sequence[str],
        template: str,
        data: Mapping[str, Any],
        channel: str = "EMAIL",
    ) -> Dict[str, bool]:
        channels = CHANNELS if channel == "TODOS" else (channel,)
        results = {c: c not in self.failing_channels for c in channels}
        self.sent.append(
            {
                "recipients": list(recipients),
                "template": template,
                "data": dict(data),
                "channels": results,
            }
        )
        logger.debug(f"Notification '{template}' to {list(recipients)}: {results}")
        return results

    def templates_sent(self) -> List[str]:
        return [n["template"] for n in self.sent]


class StaticUserDirectory:
    """User directory backed by a fixed set of ids. ``None`` accepts anyone."""

    def __init__(self, known_users: Optional[Iterable[str]] = None) -> None:
        self._known = set(known_users) if known_users is not None else None

    async def lookup(self, user_ids: Sequence[str]) -> Dict[str, bool]:
        if self._known is None:
            return {uid: True for uid in user_ids}
        return {uid: uid in self._known for uid in user_ids}


class InMemoryDocumentGenerator:
    def __init__(self) -> None:
        self.documents: Dict[str, Tuple[str, Dict[str, Any]]] = {}

    async def generate(self, template: str, data: Mapping[str, Any]) -> str:
        document_id = str(uuid.uuid4())
        self.documents[document_id] = (template, dict(data))
        return document_id


class InMemoryIntegrationConnector:
    """Returns canned responses per endpoint.

    Endpoints listed in ``timeouts`` raise :class:`IntegrationTimeout` for that
    many calls before answering.
    """

    def __init__(
        self,
        responses: Optional[Mapping[str, IntegrationResponse]] = None,
        timeouts: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.responses = dict(responses or {})
        self._timeouts = dict(timeouts or {})
        self.calls: List[Dict[str, Any]] = []

    async def invoke(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        credentials: Optional[Mapping[str, Any]] = None,
        method: str = "POST",
        timeout: Optional[float] = None,
    ) -> IntegrationResponse:
        self.calls.append({"endpoint": endpoint, "payload": dict(payload), "method": method})
        remaining = self._timeouts.get(endpoint, 0)
        if remaining > 0:
            self._timeouts[endpoint] = remaining - 1
            raise IntegrationTimeout(f"{method} {endpoint} timed out")
        return self.responses.get(endpoint, IntegrationResponse(status_code=200, body={}))
