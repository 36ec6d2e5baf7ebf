"""
shipline — unit tests for quality gate polling

File: tests/unit/pipeline/test_quality_gate.py
Last updated: 2026-10-18

Purpose
- Validate verdict polling against a scripted HTTP session (no network).

What this test file should cover
- Pending statuses keep polling; pass statuses pass; anything else fails.
- 5xx responses and transport errors are retried.
- 4xx responses and malformed payloads raise ``QualityGateError``.
- The bearer token and query params are sent.
- A session the gate created itself is closed once polling ends.
"""

from __future__ import annotations

from typing import Any

import pytest
import requests

from shipline.pipeline.quality_gate import GateVerdict, HttpQualityGate, QualityGate, QualityGateError

URL = "https://quality.example/api/qualitygates/project_status"


class FakeResponse:
    def __init__(self, status_code: int, payload: object = None, *, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self) -> object:
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeSession:
    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _status(value: str) -> FakeResponse:
    return FakeResponse(200, {"projectStatus": {"status": value}})


def _gate(session: FakeSession, **options: Any) -> HttpQualityGate:
    return HttpQualityGate(URL, poll_interval_seconds=0.01, session=session, **options)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_pending_statuses_are_polled_until_pass() -> None:
    session = FakeSession(_status("PENDING"), _status("IN_PROGRESS"), _status("ok"))

    verdict = await _gate(session).wait()

    assert verdict == GateVerdict(passed=True, status="OK")
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_failing_status_is_a_failed_verdict() -> None:
    verdict = await _gate(FakeSession(_status("ERROR"))).wait()

    assert not verdict.passed
    assert verdict.detail == "quality gate status ERROR"


@pytest.mark.asyncio
async def test_server_errors_and_transport_errors_are_retried() -> None:
    session = FakeSession(
        FakeResponse(503),
        requests.ConnectionError("connection refused"),
        _status("PASSED"),
    )

    verdict = await _gate(session).wait()

    assert verdict.passed
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_client_errors_fail_immediately() -> None:
    with pytest.raises(QualityGateError, match="HTTP 401"):
        await _gate(FakeSession(FakeResponse(401))).wait()


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(200, invalid_json=True),
        FakeResponse(200, {"status": "OK"}),
        FakeResponse(200, {"projectStatus": {"status": ""}}),
    ],
)
def test_malformed_payloads_raise(response: FakeResponse) -> None:
    with pytest.raises(QualityGateError):
        _gate(FakeSession(response)).fetch_status()


def test_token_params_and_timeout_are_sent() -> None:
    session = FakeSession(_status("OK"))
    gate = _gate(session, params={"projectKey": "webapp"}, token="s3cret", request_timeout_seconds=4.0)

    assert gate.fetch_status() == "OK"
    call = session.calls[0]
    assert call["url"] == URL
    assert call["params"] == {"projectKey": "webapp"}
    assert call["headers"]["Authorization"] == "Bearer s3cret"
    assert call["timeout"] == 4.0
    assert isinstance(gate, QualityGate)


def test_constructor_validation() -> None:
    with pytest.raises(ValueError, match="url"):
        HttpQualityGate("  ")
    with pytest.raises(ValueError, match="poll_interval_seconds"):
        HttpQualityGate(URL, poll_interval_seconds=0)


class ClosableSession(FakeSession):
    def __init__(self, *responses: FakeResponse | Exception) -> None:
        super().__init__(*responses)
        self.closed = False

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_owned_session_is_closed_after_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[ClosableSession] = []

    def _session() -> ClosableSession:
        created.append(ClosableSession(FakeResponse(403)))
        return created[-1]

    monkeypatch.setattr(requests, "Session", _session)
    gate = HttpQualityGate(URL, poll_interval_seconds=0.01)

    with pytest.raises(QualityGateError):
        await gate.wait()

    assert len(created) == 1
    assert created[0].closed


@pytest.mark.asyncio
async def test_injected_session_is_left_open() -> None:
    session = ClosableSession(_status("OK"))

    await _gate(session).wait()

    assert not session.closed
