"""Error taxonomy shared by the ingestion and delivery pipeline."""

from __future__ import annotations


class SerialDropError(Exception):
    """Base class for every failure the pipeline reports."""


class Unreachable(SerialDropError):
    """A source or transport could not be reached (network, DNS, timeout, HTTP status)."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class MalformedContent(SerialDropError):
    """A feed, page or selector no longer yields the expected structure."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class StorageFailure(SerialDropError):
    """The object store or the relational store rejected a read or write."""


class ConversionFailure(SerialDropError):
    """The external e-book converter rejected the input or errored."""


class DeliveryFailure(SerialDropError):
    """A transport rejected the send of a verification message or an artifact."""


class ConfigurationError(SerialDropError):
    """A channel is not eligible or a subscription is misconfigured."""


__all__ = [
    "ConfigurationError",
    "ConversionFailure",
    "DeliveryFailure",
    "MalformedContent",
    "SerialDropError",
    "StorageFailure",
    "Unreachable",
]
