"""Download filing documents and turn them into plain text."""
from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import pdfplumber
import requests
from bs4 import BeautifulSoup

from .rate_limiter import RateLimiter
from .transport import rate_limited_request

LOGGER = logging.getLogger(__name__)

DEFAULT_PARSE_TIMEOUT = 30.0
MAX_PDF_PAGES = 50
WHITESPACE = re.compile(r"\s+")

# Shared so that an abandoned parse does not pin a fresh thread per call.
_PARSER_POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="document-parse")


class DocumentParseError(RuntimeError):
    """A document could not be turned into text."""


@dataclass(slots=True)
class DocumentContent:
    url: str
    text: str
    content_type: str


def html_to_text(markup: str) -> str:
    """Strip tags, scripts and styles from ``markup`` and collapse whitespace."""

    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return WHITESPACE.sub(" ", soup.get_text(" ")).strip()


def _pdf_to_text(data: bytes, max_pages: int) -> str:
    with pdfplumber.open(BytesIO(data)) as pdf:
        pages = []
        for page in pdf.pages[:max_pages]:
            pages.append(page.extract_text() or "")
    return WHITESPACE.sub(" ", "\n".join(pages)).strip()


def pdf_to_text(
    data: bytes, *, timeout: float = DEFAULT_PARSE_TIMEOUT, max_pages: int = MAX_PDF_PAGES
) -> str:
    """Extract text from PDF bytes, giving up after ``timeout`` seconds."""

    future = _PARSER_POOL.submit(_pdf_to_text, data, max_pages)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise DocumentParseError(f"PDF parsing timed out after {timeout:.0f}s") from exc
    except DocumentParseError:
        raise
    except Exception as exc:
        raise DocumentParseError(f"PDF parsing failed: {exc}") from exc


def _looks_like_pdf(url: str, content_type: str, data: bytes) -> bool:
    return "pdf" in content_type.lower() or url.lower().endswith(".pdf") or data[:5] == b"%PDF-"


def fetch_document_text(
    session: requests.Session,
    url: str,
    limiter: Optional[RateLimiter] = None,
    *,
    timeout: float = 30.0,
    parse_timeout: float = DEFAULT_PARSE_TIMEOUT,
    headers: Optional[dict[str, str]] = None,
) -> DocumentContent:
    """Download ``url`` and return its text content.

    PDFs are parsed with pdfplumber under ``parse_timeout``; anything else is
    treated as HTML or plain text. Image-only PDFs yield an empty string.
    """

    response = rate_limited_request(
        session,
        "GET",
        url,
        limiter,
        timeout=timeout,
        headers={"Accept": "application/pdf,text/html,application/xhtml+xml,text/plain,*/*", **(headers or {})},
    )
    content_type = response.headers.get("Content-Type", "")
    data = response.content
    if _looks_like_pdf(url, content_type, data):
        LOGGER.debug("Parsing PDF document %s (%d bytes)", url, len(data))
        text = pdf_to_text(data, timeout=parse_timeout)
    else:
        text = html_to_text(response.text)
    return DocumentContent(url=url, text=text, content_type=content_type)


__all__ = [
    "DocumentParseError",
    "DocumentContent",
    "html_to_text",
    "pdf_to_text",
    "fetch_document_text",
]
