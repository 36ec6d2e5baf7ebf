"""
shipline — unit tests for structured run logging

File: tests/unit/observability/test_logging.py
Last updated: 2026-10-18

Purpose
- Validate the JSON-lines run log: redaction, correlation fields and queue draining.

What this test file should cover
- Each line is a JSON object with the run id and active stage at the top level.
- Secret-looking keys and credential-looking text never reach the file.
- ``*_env`` keys name variables and are kept as-is.
- Concurrent writers produce only whole, parseable lines.
- Shutdown drains queued records and is idempotent.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest

from shipline.observability.logging import (
    REDACTED,
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"shipline.tests.logging.{uuid4().hex}"


def _lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_lines_carry_correlation_and_redact_secrets(tmp_path: Path) -> None:
    name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(run_id="run-7", base_log_dir=tmp_path, logger_name=name))
    logger = logging.getLogger(name)

    with correlation_scope(stage="publish", environment="docker"):
        logger.warning(
            "push failed: Authorization: Bearer abc.def.ghi token=tk-FAKE",
            extra={"registry": {"password": "hunter2", "host": "registry.example"}, "token_env": "REG_TOKEN"},
        )

    shutdown_logging(handle)

    (line,) = _lines(handle.log_path)
    assert handle.log_path == tmp_path / "run-7" / "pipeline.jsonl"
    assert line["run_id"] == "run-7"
    assert line["stage"] == "publish"
    assert line["environment"] == "docker"
    assert line["level"] == "WARNING"
    fields = line["fields"]
    assert isinstance(fields, dict)
    assert fields["registry"] == {"password": REDACTED, "host": "registry.example"}
    assert fields["token_env"] == "REG_TOKEN"

    raw = handle.log_path.read_text(encoding="utf-8")
    assert "hunter2" not in raw
    assert "abc.def.ghi" not in raw
    assert "tk-FAKE" not in raw


def test_correlation_scope_nests_and_restores() -> None:
    with correlation_scope(run_id="r1", stage="build"):
        with correlation_scope(stage="test", environment=None):
            assert get_correlation_context() == {"run_id": "r1", "stage": "test"}
        assert get_correlation_context() == {"run_id": "r1", "stage": "build"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError):
        with correlation_scope(stage="  "):
            pass


def test_setup_logging_reads_observability_section(tmp_path: Path) -> None:
    name = _logger_name()
    logger = setup_logging(
        {"log_level": "WARNING", "log_dir": str(tmp_path), "redact_secrets": True},
        run_id="run-wrapper",
        logger_name=name,
    )

    logger.info("dropped by level")
    logger.error("kept", extra={"api_key": "k-123"})
    shutdown_logging()

    lines = _lines(tmp_path / "run-wrapper" / "pipeline.jsonl")
    assert [line["message"] for line in lines] == ["kept"]
    assert "k-123" not in json.dumps(lines)


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    name = _logger_name()
    logger = setup_logging(
        {"log_dir": str(tmp_path), "redact_secrets": False},
        run_id="run-plain",
        logger_name=name,
    )

    logger.info("plain", extra={"password": "visible"})
    shutdown_logging()

    (line,) = _lines(tmp_path / "run-plain" / "pipeline.jsonl")
    assert line["fields"] == {"password": "visible"}


def test_concurrent_writers_produce_whole_lines(tmp_path: Path) -> None:
    name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(run_id="run-mt", base_log_dir=tmp_path, logger_name=name))
    logger = logging.getLogger(name)

    def _write(worker: int) -> None:
        with correlation_scope(stage=f"stage-{worker}"):
            for index in range(50):
                logger.info("tick", extra={"worker": worker, "index": index})

    threads = [threading.Thread(target=_write, args=(worker,)) for worker in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    shutdown_logging(handle)

    lines = _lines(handle.log_path)
    assert len(lines) == 300
    for line in lines:
        fields = line["fields"]
        assert isinstance(fields, dict)
        assert line["stage"] == f"stage-{fields['worker']}"


def test_shutdown_drains_queue_and_is_idempotent(tmp_path: Path) -> None:
    name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-drain", base_log_dir=tmp_path, logger_name=name, queue_size=10_000)
    )
    logger = logging.getLogger(name)

    for index in range(500):
        logger.info("line %d", index)

    assert get_active_logging_handle() is handle
    shutdown_logging()
    shutdown_logging(handle)

    assert handle.is_shutdown
    assert get_active_logging_handle() is None
    assert handle.dropped_records == 0
    assert len(_lines(handle.log_path)) == 500


def test_new_setup_replaces_active_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(LoggingConfig(run_id="one", base_log_dir=tmp_path, logger_name=_logger_name()))
    second = setup_structured_logging(LoggingConfig(run_id="two", base_log_dir=tmp_path, logger_name=_logger_name()))

    assert first.is_shutdown
    assert get_active_logging_handle() is second


def test_exceptions_are_serialized(tmp_path: Path) -> None:
    name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(run_id="run-exc", base_log_dir=tmp_path, logger_name=name))
    logger = logging.getLogger(name)

    try:
        raise RuntimeError("password=swordfish")
    except RuntimeError:
        logger.exception("stage crashed")
    shutdown_logging(handle)

    (line,) = _lines(handle.log_path)
    assert "RuntimeError" in str(line["exception"])
    assert "swordfish" not in str(line["exception"])


@pytest.mark.parametrize(
    ("config", "message"),
    [
        ({"run_id": " "}, "run_id"),
        ({"run_id": "r", "queue_size": 0}, "queue_size"),
        ({"run_id": "r", "level": "LOUD"}, "logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(tmp_path: Path, config: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(
            LoggingConfig(base_log_dir=tmp_path, logger_name=_logger_name(), **config)  # type: ignore[arg-type]
        )


def test_redact_text_masks_known_token_shapes() -> None:
    text = "ghp_" + "a" * 36 + " AKIA" + "B" * 16 + " glpat-" + "c" * 20

    assert redact_text(text) == f"{REDACTED} {REDACTED} {REDACTED}"
    assert default_log_redactor(["secret=x", 3, None]) == [f"secret={REDACTED}", 3, None]
