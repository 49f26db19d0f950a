"""Access to the external sites that publish serial chapters."""

from .fetcher import Candidate, SourceFetcher, create_http_client

__all__ = ["Candidate", "SourceFetcher", "create_http_client"]
