"""Delivery channels and their verification state machine.

A user's :class:`~serialdrop.models.DeliveryMethod` row holds two channels.
Each channel is in exactly one :class:`ChannelState`::

    UNCONFIGURED --register--> PENDING_VERIFICATION --confirm--> ENABLED
                                      |                           ^  |
                               (window passes)              enable|  |disable
                                      v                           |  v
                              VERIFICATION_EXPIRED              DISABLED

Only ENABLED channels receive deliveries. An expired code must be reissued by
registering again. Pushover keys are verified by a successful confirmation
push, so they go straight from UNCONFIGURED to ENABLED.

The transition functions mutate the given row; committing it is the caller's
job.
"""

from __future__ import annotations

import enum
import hmac
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from serialdrop.conversion import EPUB_MEDIA_TYPE, ConversionGateway, build_verification_book
from serialdrop.errors import ConfigurationError
from serialdrop.models import DeliveryMethod, utcnow

from .transports import Attachment, EmailMessage, EmailTransport, PushTransport

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_WINDOW = timedelta(minutes=5)
VERIFICATION_CODE_LENGTH = 10
_CODE_ALPHABET = string.ascii_uppercase + string.digits
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


class ChannelKind(str, enum.Enum):
    KINDLE_EMAIL = "kindle_email"
    PUSHOVER = "pushover"

    def __str__(self) -> str:
        return self.value


class ChannelState(str, enum.Enum):
    UNCONFIGURED = "unconfigured"
    PENDING_VERIFICATION = "pending_verification"
    VERIFICATION_EXPIRED = "verification_expired"
    DISABLED = "disabled"
    ENABLED = "enabled"

    def __str__(self) -> str:
        return self.value


def generate_verification_code(length: int = VERIFICATION_CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def channel_state(
    method: Optional[DeliveryMethod],
    kind: ChannelKind,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_VERIFICATION_WINDOW,
) -> ChannelState:
    """Derive the state of one channel from a user's delivery method row."""
    if method is None:
        return ChannelState.UNCONFIGURED
    now = now or utcnow()

    if kind is ChannelKind.KINDLE_EMAIL:
        if not method.kindle_email:
            return ChannelState.UNCONFIGURED
        if not method.kindle_email_verified:
            issued_at = method.kindle_email_verification_code_time
            if method.kindle_email_verification_code and issued_at is not None and now - issued_at < window:
                return ChannelState.PENDING_VERIFICATION
            return ChannelState.VERIFICATION_EXPIRED
        return ChannelState.ENABLED if method.kindle_email_enabled else ChannelState.DISABLED

    if not method.pushover_key:
        return ChannelState.UNCONFIGURED
    if not method.pushover_key_verified:
        return ChannelState.PENDING_VERIFICATION
    return ChannelState.ENABLED if method.pushover_enabled else ChannelState.DISABLED


def eligible_channels(
    method: Optional[DeliveryMethod],
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_VERIFICATION_WINDOW,
) -> List[ChannelKind]:
    """Channels that are verified and enabled, in a fixed order."""
    return [kind for kind in ChannelKind if channel_state(method, kind, now, window) is ChannelState.ENABLED]


async def register_kindle_email(
    method: DeliveryMethod,
    address: str,
    transport: EmailTransport,
    converter: ConversionGateway | None = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Start verification of a Kindle e-mail address.

    Sends the code to the address, with a small e-book carrying the code when
    a converter is given, then records the address as pending. Returns the
    code.

    Raises:
        ConversionFailure: The verification e-book could not be built.
        DeliveryFailure: The e-mail was rejected; the row is left unchanged.
    """
    address = address.strip()
    if not address or "@" not in address:
        raise ConfigurationError(f"Invalid Kindle e-mail address: {address!r}")

    code = generate_verification_code()
    subject = "Serialdrop Kindle Email Verification"
    text = (
        "Thank you for using serialdrop. To verify your Kindle e-mail address, "
        f"enter the following code: {code}"
    )
    attachment = None
    if converter is not None:
        book = await build_verification_book(converter, code)
        attachment = Attachment(file_name="SerialdropVerification.epub", content_type=EPUB_MEDIA_TYPE, data=book)

    await transport.send(EmailMessage(to=address, subject=subject, text=text, attachment=attachment))

    method.kindle_email = address
    method.kindle_email_verified = False
    method.kindle_email_enabled = False
    method.kindle_email_verification_code = code
    method.kindle_email_verification_code_time = now or utcnow()
    logger.info("Verification code issued for user %s", method.user_id)
    return code


def confirm_kindle_email(
    method: DeliveryMethod,
    code: str,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_VERIFICATION_WINDOW,
) -> None:
    """Verify and enable the Kindle channel if ``code`` matches within the window.

    Raises:
        ConfigurationError: No code is pending, the code expired, or it does not match.
    """
    now = now or utcnow()
    state = channel_state(method, ChannelKind.KINDLE_EMAIL, now, window)
    if state is ChannelState.VERIFICATION_EXPIRED:
        raise ConfigurationError("Verification code expired; register the address again for a new code")
    if state is not ChannelState.PENDING_VERIFICATION:
        raise ConfigurationError(f"No Kindle e-mail verification pending (channel is {state})")

    expected = method.kindle_email_verification_code or ""
    if not hmac.compare_digest(code.strip().upper().encode(), expected.encode()):
        raise ConfigurationError("Verification code does not match")

    method.kindle_email_verified = True
    method.kindle_email_enabled = True
    method.kindle_email_verification_code = None
    method.kindle_email_verification_code_time = None
    logger.info("Kindle e-mail verified for user %s", method.user_id)


async def register_pushover_key(method: DeliveryMethod, key: str, transport: PushTransport) -> None:
    """Send a confirmation push; on acceptance the key is verified and enabled.

    Raises:
        DeliveryFailure: Pushover rejected the key; the row is left unchanged.
    """
    key = key.strip()
    if not key:
        raise ConfigurationError("Pushover user key is empty")
    await transport.send(
        key,
        "Thank you for using serialdrop. New chapters will be announced on this device.",
    )
    method.pushover_key = key
    method.pushover_key_verified = True
    method.pushover_enabled = True
    logger.info("Pushover key verified for user %s", method.user_id)


def set_channel_enabled(method: DeliveryMethod, kind: ChannelKind, enabled: bool) -> None:
    """Toggle a verified channel.

    Raises:
        ConfigurationError: The channel has not been verified.
    """
    if kind is ChannelKind.KINDLE_EMAIL:
        if not (method.kindle_email and method.kindle_email_verified):
            raise ConfigurationError("Kindle e-mail must be verified before it can be toggled")
        method.kindle_email_enabled = enabled
    else:
        if not (method.pushover_key and method.pushover_key_verified):
            raise ConfigurationError("Pushover key must be verified before it can be toggled")
        method.pushover_enabled = enabled


@dataclass
class Delivery:
    """A group ready to hand to a channel.

    Attributes:
        method: The recipient's delivery method row.
        book_name: Name of the book.
        book_author: Author of the book.
        chapter_titles: Titles of the group's chapters in discovery order.
        artifact: The converted e-book, for channels that attach it.
    """

    method: DeliveryMethod
    book_name: str
    book_author: str
    chapter_titles: List[str] = field(default_factory=list)
    artifact: bytes | None = None


class Channel(Protocol):
    kind: ChannelKind
    needs_artifact: bool

    async def deliver(self, delivery: Delivery) -> None: ...


class _BaseChannel:
    kind: ChannelKind
    needs_artifact = False

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        verification_window: timedelta = DEFAULT_VERIFICATION_WINDOW,
    ) -> None:
        self._clock = clock
        self.verification_window = verification_window

    def _require_enabled(self, method: DeliveryMethod) -> None:
        state = channel_state(method, self.kind, self._clock(), self.verification_window)
        if state is not ChannelState.ENABLED:
            raise ConfigurationError(f"{self.kind} channel for user {method.user_id} is {state}")


class KindleEmailChannel(_BaseChannel):
    """E-mails the group's e-book to the user's Kindle address."""

    kind = ChannelKind.KINDLE_EMAIL
    needs_artifact = True

    def __init__(self, transport: EmailTransport, **kwargs) -> None:
        super().__init__(**kwargs)
        self.transport = transport

    async def deliver(self, delivery: Delivery) -> None:
        self._require_enabled(delivery.method)
        if delivery.artifact is None:
            raise ValueError("Kindle delivery requires a converted artifact")

        subject = email_subject(delivery.book_name, delivery.chapter_titles)
        attachment = Attachment(
            file_name=artifact_file_name(delivery.book_name, delivery.chapter_titles),
            content_type=EPUB_MEDIA_TYPE,
            data=delivery.artifact,
        )
        await self.transport.send(
            EmailMessage(
                to=delivery.method.kindle_email,
                subject=subject,
                text=subject,
                html=subject,
                attachment=attachment,
            )
        )


class PushoverChannel(_BaseChannel):
    """Announces the group's chapters with a push notification."""

    kind = ChannelKind.PUSHOVER

    def __init__(self, transport: PushTransport, **kwargs) -> None:
        super().__init__(**kwargs)
        self.transport = transport

    async def deliver(self, delivery: Delivery) -> None:
        self._require_enabled(delivery.method)
        await self.transport.send(
            delivery.method.pushover_key,
            push_message(delivery.book_name, delivery.book_author, delivery.chapter_titles),
        )


def email_subject(book_name: str, chapter_titles: Sequence[str]) -> str:
    first = chapter_titles[0] if chapter_titles else ""
    if len(chapter_titles) == 1:
        return f"New chapter of {book_name}: {first}"
    return f"New chapters of {book_name}: {first}"


def push_message(book_name: str, author: str, chapter_titles: Sequence[str]) -> str:
    names = ", ".join(chapter_titles)
    if len(chapter_titles) == 1:
        return f"A new chapter of {book_name} by {author} has been released: {names}"
    return f"New chapters of {book_name} by {author} have been released: {names}"


def artifact_file_name(book_name: str, chapter_titles: Sequence[str], extension: str = "epub") -> str:
    stem = book_name if not chapter_titles else f"{book_name} - {chapter_titles[0]}"
    stem = _UNSAFE_FILENAME_CHARS.sub(" ", stem).strip() or "chapters"
    return f"{stem[:150]}.{extension}"


def build_channels(
    email_transport: EmailTransport | None,
    push_transport: PushTransport | None,
    **kwargs,
) -> Dict[ChannelKind, Channel]:
    """Channels for the configured transports; a missing transport omits its channel."""
    channels: Dict[ChannelKind, Channel] = {}
    if email_transport is not None:
        channels[ChannelKind.KINDLE_EMAIL] = KindleEmailChannel(email_transport, **kwargs)
    if push_transport is not None:
        channels[ChannelKind.PUSHOVER] = PushoverChannel(push_transport, **kwargs)
    return channels


__all__ = [
    "Channel",
    "ChannelKind",
    "ChannelState",
    "Delivery",
    "KindleEmailChannel",
    "PushoverChannel",
    "artifact_file_name",
    "build_channels",
    "channel_state",
    "confirm_kindle_email",
    "eligible_channels",
    "email_subject",
    "generate_verification_code",
    "push_message",
    "register_kindle_email",
    "register_pushover_key",
    "set_channel_enabled",
]
