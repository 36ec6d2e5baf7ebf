"""
shipline — external quality gate polling

File: src/shipline/pipeline/quality_gate.py
Last updated: 2026-10-18

Purpose
- Ask an external code-quality service for its verdict on the current analysis
  and wait until it reports a terminal status.

Functional requirements
- Pending statuses keep the gate waiting; pass statuses succeed; anything else fails.
- Transport errors and 5xx responses are transient and retried on the next poll.
- 4xx responses (bad credentials, unknown project) fail immediately.
- The wait itself is unbounded here; the stage timeout bounds it and its
  timeout policy decides whether expiry aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Protocol, runtime_checkable

import requests

logger = logging.getLogger(__name__)

PASS_STATUSES: Final[frozenset[str]] = frozenset({"OK", "PASSED", "SUCCESS"})
PENDING_STATUSES: Final[frozenset[str]] = frozenset({"PENDING", "IN_PROGRESS", "NONE"})
DEFAULT_STATUS_PATH: Final[tuple[str, ...]] = ("projectStatus", "status")


class QualityGateError(RuntimeError):
    """Raised when the quality service rejects the request or returns garbage."""


@dataclass(frozen=True, slots=True)
class GateVerdict:
    """Terminal answer from a quality gate."""

    passed: bool
    status: str
    detail: str | None = None


@runtime_checkable
class QualityGate(Protocol):
    """Anything that can be awaited for a pass/fail verdict."""

    async def wait(self) -> GateVerdict: ...


class HttpQualityGate:
    """Poll a JSON status endpoint until it leaves the pending state."""

    def __init__(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        token: str | None = None,
        poll_interval_seconds: float = 5.0,
        request_timeout_seconds: float = 10.0,
        status_path: tuple[str, ...] = DEFAULT_STATUS_PATH,
        session: requests.Session | None = None,
    ) -> None:
        if not url.strip():
            raise ValueError("url must be non-empty")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if not status_path:
            raise ValueError("status_path must not be empty")
        self._url = url.strip()
        self._params = dict(params or {})
        self._token = token
        self._poll_interval_seconds = float(poll_interval_seconds)
        self._request_timeout_seconds = float(request_timeout_seconds)
        self._status_path = tuple(status_path)
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()

    @property
    def url(self) -> str:
        return self._url

    async def wait(self) -> GateVerdict:
        """Poll until a final status arrives; a session created here is closed on the way out."""
        try:
            return await self._poll()
        finally:
            self.close()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    async def _poll(self) -> GateVerdict:
        polls = 0
        while True:
            polls += 1
            status = await asyncio.to_thread(self.fetch_status)
            if status is None or status in PENDING_STATUSES:
                logger.debug("quality gate pending", extra={"status": status, "polls": polls})
                await asyncio.sleep(self._poll_interval_seconds)
                continue
            passed = status in PASS_STATUSES
            logger.info("quality gate verdict", extra={"status": status, "passed": passed, "polls": polls})
            return GateVerdict(
                passed=passed,
                status=status,
                detail=None if passed else f"quality gate status {status}",
            )

    def fetch_status(self) -> str | None:
        """Fetch the current status once; ``None`` means "try again"."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            response = self._session.get(
                self._url,
                headers=headers,
                params=self._params,
                timeout=self._request_timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("quality gate request failed", extra={"error": str(exc)})
            return None

        if response.status_code >= 500:
            logger.warning("quality gate service error", extra={"http_status": response.status_code})
            return None
        if 400 <= response.status_code < 500:
            raise QualityGateError(f"quality gate request rejected: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise QualityGateError(f"quality gate returned invalid JSON: {exc}") from exc
        return _status_from_payload(payload, self._status_path)


def _status_from_payload(payload: object, path: tuple[str, ...]) -> str:
    current = payload
    for segment in path:
        if not isinstance(current, Mapping) or segment not in current:
            raise QualityGateError(f"quality gate response has no {'.'.join(path)}")
        current = current[segment]
    if not isinstance(current, str) or not current.strip():
        raise QualityGateError(f"quality gate {'.'.join(path)} must be a non-empty string")
    return current.strip().upper()


__all__ = [
    "DEFAULT_STATUS_PATH",
    "PASS_STATUSES",
    "PENDING_STATUSES",
    "GateVerdict",
    "HttpQualityGate",
    "QualityGate",
    "QualityGateError",
]
