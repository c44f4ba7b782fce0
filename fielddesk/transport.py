"""Messaging transport collaborator.

The gateway owns the messaging session; this module only hands it text to
deliver. Results follow the ``(delivered, error)`` convention used by the
dispatch loop: ``(True, None)`` or ``(False, "<reason>")``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Protocol

import requests

from .config import settings
from .domain_errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


def parse_retry_after(value, *, now: datetime | None = None) -> int:
    """Seconds from a Retry-After value: delta-seconds or an HTTP-date."""
    if value is None or value == "":
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    at = now or datetime.now(timezone.utc)
    return max(0, int((when - at).total_seconds()))


class Transport(Protocol):
    def send(self, address: str, body: str) -> tuple[bool, str | None]:
        ...

    def is_connected(self) -> bool:
        ...


class DisconnectedTransport:
    """Used when no gateway is configured: nothing is ever delivered."""

    def send(self, address: str, body: str) -> tuple[bool, str | None]:
        return False, "NOT_CONNECTED"

    def is_connected(self) -> bool:
        return False


class GatewayTransport:
    """HTTP messaging gateway client. Every call is bounded by ``timeout``."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    def _post_message(self, address: str, body: str) -> requests.Response:
        try:
            return self._session.post(
                f"{self.base_url}/send",
                json={"to": address, "text": body},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(str(exc)) from exc

    def send(self, address: str, body: str) -> tuple[bool, str | None]:
        try:
            response = self._post_message(address, body)
        except TransportError as e:
            return False, f"EXCEPTION: {e}"

        if response.status_code in (200, 201, 202):
            return True, None
        if response.status_code == 429:
            # Gateway throttling - honour its retry hint.
            retry_after = response.headers.get("Retry-After")
            if not retry_after:
                try:
                    retry_after = response.json().get("retry_after")
                except ValueError:
                    retry_after = None
            return False, f"RATE_LIMIT:{parse_retry_after(retry_after)}"
        if response.status_code == 503:
            return False, "NOT_CONNECTED"
        return False, f"HTTP_{response.status_code}: {response.text[:200]}"

    def is_connected(self) -> bool:
        try:
            response = self._session.get(f"{self.base_url}/status", timeout=self.timeout)
        except requests.RequestException:
            logger.warning("Messaging gateway status check failed", exc_info=True)
            return False
        if response.status_code != 200:
            return False
        try:
            return bool(response.json().get("connected", False))
        except ValueError:
            return False


def build_transport() -> Transport:
    """Build the configured transport."""
    if not settings.TRANSPORT_BASE_URL:
        return DisconnectedTransport()
    return GatewayTransport(
        settings.TRANSPORT_BASE_URL,
        api_key=settings.TRANSPORT_API_KEY,
        timeout=settings.TRANSPORT_TIMEOUT_SECONDS,
    )


_transport: Transport | None = None


def get_transport() -> Transport:
    """FastAPI dependency; override it in tests."""
    global _transport
    if _transport is None:
        _transport = build_transport()
    return _transport
