"""Source factory for filing document sources."""
from __future__ import annotations

import logging
from typing import Optional

import requests

from ..config import Settings
from .base import FilingSource
from .hkex import HkexSource
from .sec import SecSource

LOGGER = logging.getLogger(__name__)


def create_source(
    name: str, settings: Settings, session: Optional[requests.Session] = None
) -> FilingSource:
    """Instantiate the source implementation registered under ``name``."""

    key = name.lower()
    if key == "hkex":
        LOGGER.debug("Selected HkexSource")
        return HkexSource(session, timeout=settings.request_timeout)
    if key == "sec":
        LOGGER.debug("Selected SecSource")
        return SecSource(session, user_agent=settings.sec_user_agent, timeout=settings.request_timeout)
    raise ValueError(f"Unsupported filing source: {name}")


__all__ = ["create_source", "FilingSource", "HkexSource", "SecSource"]
