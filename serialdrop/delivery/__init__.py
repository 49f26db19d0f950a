"""Delivery channels (Kindle e-mail, Pushover) and their transports."""

from .channels import (
    ChannelKind,
    ChannelState,
    Delivery,
    KindleEmailChannel,
    PushoverChannel,
    build_channels,
    channel_state,
    confirm_kindle_email,
    eligible_channels,
    register_kindle_email,
    register_pushover_key,
    set_channel_enabled,
)
from .transports import Attachment, EmailMessage, MailgunTransport, PushoverTransport

__all__ = [
    "Attachment",
    "ChannelKind",
    "ChannelState",
    "Delivery",
    "EmailMessage",
    "KindleEmailChannel",
    "MailgunTransport",
    "PushoverChannel",
    "PushoverTransport",
    "build_channels",
    "channel_state",
    "confirm_kindle_email",
    "eligible_channels",
    "register_kindle_email",
    "register_pushover_key",
    "set_channel_enabled",
]
