"""HTTP transports for e-mail (Mailgun) and push notifications (Pushover)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from serialdrop.errors import ConfigurationError, DeliveryFailure

logger = logging.getLogger(__name__)

PUSHOVER_ENDPOINT = "https://api.pushover.net/1/messages.json"


@dataclass(frozen=True)
class Attachment:
    file_name: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class EmailMessage:
    """An outgoing e-mail. At least one of ``text`` and ``html`` should be set."""

    to: str
    subject: str
    text: str | None = None
    html: str | None = None
    attachment: Attachment | None = None


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class PushTransport(Protocol):
    async def send(self, user_key: str, message: str) -> None: ...


class MailgunTransport:
    """Sends e-mail through the Mailgun messages API.

    Raises:
        ConfigurationError: On construction, when credentials are missing.
    """

    def __init__(
        self,
        api_key: str | None,
        endpoint: str | None,
        from_email: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not api_key or not endpoint or not from_email:
            raise ConfigurationError(
                "Mailgun requires an API key, an endpoint and a from address "
                "(SERIALDROP_MAILGUN_API_KEY, SERIALDROP_MAILGUN_ENDPOINT, SERIALDROP_FROM_EMAIL)"
            )
        self.api_key = api_key
        self.endpoint = endpoint
        self.from_email = from_email
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def send(self, message: EmailMessage) -> None:
        data = {"from": self.from_email, "to": message.to, "subject": message.subject}
        if message.text is not None:
            data["text"] = message.text
        if message.html is not None:
            data["html"] = message.html
        files = None
        if message.attachment is not None:
            attachment = message.attachment
            files = {"attachment": (attachment.file_name, attachment.data, attachment.content_type)}

        try:
            response = await self.client.post(
                self.endpoint,
                data=data,
                files=files,
                auth=("api", self.api_key),
            )
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Mailgun request failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryFailure(f"Mailgun rejected the message with status {response.status_code}")
        logger.info("Sent e-mail %r to %s", message.subject, message.to)


class PushoverTransport:
    """Sends push notifications through the Pushover messages API."""

    def __init__(
        self,
        token: str | None,
        *,
        endpoint: str = PUSHOVER_ENDPOINT,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not token:
            raise ConfigurationError("Pushover requires an application token (SERIALDROP_PUSHOVER_TOKEN)")
        self.token = token
        self.endpoint = endpoint
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def send(self, user_key: str, message: str) -> None:
        payload = {"token": self.token, "user": user_key, "message": message}
        try:
            response = await self.client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Pushover request failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryFailure(f"Pushover rejected the message with status {response.status_code}")
        logger.info("Sent push notification to %s...", user_key[:6])


__all__ = [
    "Attachment",
    "EmailMessage",
    "EmailTransport",
    "MailgunTransport",
    "PushTransport",
    "PushoverTransport",
]
