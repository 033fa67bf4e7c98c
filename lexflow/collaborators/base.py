"""Interfaces of the platform services the engine calls out to."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, Field


class IntegrationTimeout(Exception):
    """The external system did not answer in time."""


class IntegrationResponse(BaseModel):
    status_code: int
    body: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class NotificationSender(Protocol):
    """Composes and delivers notifications. Returns per-channel success."""

    async def send(
        self,
        recipients: Sequence[str],
        template: str,
        data: Mapping[str, Any],
        channel: str = "EMAIL",
    ) -> Dict[str, bool]:
        ...


class IntegrationConnector(Protocol):
    """Calls an external system. Raises :class:`IntegrationTimeout` on timeout."""

    async def invoke(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        credentials: Optional[Mapping[str, Any]] = None,
        method: str = "POST",
        timeout: Optional[float] = None,
    ) -> IntegrationResponse:
        ...


class UserDirectory(Protocol):
    """Answers whether user ids exist."""

    async def lookup(self, user_ids: Sequence[str]) -> Dict[str, bool]:
        ...


class DocumentGenerator(Protocol):
    """Renders a document from a template and returns its id."""

    async def generate(self, template: str, data: Mapping[str, Any]) -> str:
        ...
