"""Base classes for filing document sources."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Mapping, Optional

import requests

from ..documents import fetch_document_text
from ..models import DocumentRef
from ..rate_limiter import RateLimiter, get_limiter
from ..transport import DEFAULT_TIMEOUT


class FilingSource(ABC):
    """Abstract source that lists an exchange's or regulator's documents."""

    #: Value stored in ``raw_filings.source``.
    name: str = ""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        *,
        document_limiter: Optional[RateLimiter] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self.limiter = limiter
        #: Document downloads and PDF parsing share their own budget.
        self.document_limiter = document_limiter or get_limiter("pdf")
        self.timeout = timeout

    @property
    def request_headers(self) -> Mapping[str, str]:
        return {}

    @abstractmethod
    def list_issuer_documents(self, issuer_code: str, since: date) -> list[DocumentRef]:
        """Return every document filed by ``issuer_code`` since ``since``."""

    @abstractmethod
    def search_documents(self, keyword: str, since: date) -> list[DocumentRef]:
        """Return documents across all issuers matching ``keyword`` since ``since``.

        Each result carries the filer's ``issuer_code``.
        """

    def fetch_text(self, document: DocumentRef, *, parse_timeout: float = 30.0) -> str:
        """Download ``document`` and return its plain text."""

        content = fetch_document_text(
            self.session,
            document.url,
            self.document_limiter,
            timeout=self.timeout,
            parse_timeout=parse_timeout,
            headers=dict(self.request_headers),
        )
        return content.text


__all__ = ["FilingSource"]
