"""Environment driven settings shared by the services and the web app."""
from __future__ import annotations

import logging
import os

import pytz

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_SERVER_PORT = 5002


def get_timezone_name() -> str:
    return os.environ.get("CRM_TIMEZONE", "").strip() or DEFAULT_TIMEZONE


def resolve_timezone(name=None):
    """Return the pytz zone for ``name`` (or ``CRM_TIMEZONE``)."""
    name = name or get_timezone_name()
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone %s; falling back to %s", name, DEFAULT_TIMEZONE)
        return pytz.timezone(DEFAULT_TIMEZONE)


def get_server_port() -> int:
    raw = os.environ.get("CRM_SERVER_PORT", "").strip()
    if not raw:
        return DEFAULT_SERVER_PORT
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid CRM_SERVER_PORT %r", raw)
        return DEFAULT_SERVER_PORT
