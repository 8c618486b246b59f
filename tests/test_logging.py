"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer

from convergectl.logging import HUMAN_LOG_NAME, OPERATIONS_LOG_NAME, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger.logs_dir / OPERATIONS_LOG_NAME
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_logger_is_disabled_when_logs_dir_is_a_file(tmp_path: Path) -> None:
    """A logs path that cannot become a directory turns logging off."""
    blocked = tmp_path / "logs"
    blocked.write_text("not a directory", encoding="utf-8")

    logger = StructuredLogger(blocked)

    assert logger._enabled is False  # type: ignore[attr-defined]
    with logger.operation("apply", args={"manifest": "specs.yml"}) as op:
        op.success("done", changed=0)
    assert blocked.read_text(encoding="utf-8") == "not a directory"


def test_logger_stops_writing_after_an_io_error(tmp_path: Path) -> None:
    """An unwritable operations log disables the logger for later commands."""
    logger = StructuredLogger(tmp_path / "logs")
    (tmp_path / "logs" / OPERATIONS_LOG_NAME).mkdir()

    with logger.operation("apply") as op:
        op.success("done", changed=0)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("plan") as op:
        op.success("done", changed=0)
    assert not (tmp_path / "logs" / HUMAN_LOG_NAME).exists()


def test_operation_record_contains_steps(tmp_path: Path) -> None:
    """Steps and the result are written as one JSON line per operation."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("apply", target={"cluster": "demo"}) as op:
        op.add_step("sequencing", detail="policy, release")
        op.add_step("reconciling:policy", status="created")
        op.success("Run status: success", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "apply"
    assert record["target"] == {"cluster": "demo"}
    assert [step["name"] for step in record["steps"]] == ["sequencing", "reconciling:policy"]
    assert record["steps"][0]["detail"] == "policy, release"
    assert record["result"]["changed"] == 1
    assert "convergectl_version" in record["context"]
    assert (tmp_path / "logs" / HUMAN_LOG_NAME).read_text(encoding="utf-8").count("apply [success]") == 1


def test_warning_context_is_made_json_safe(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    class Opaque:
        def __str__(self) -> str:
            return "<opaque>"

    with logger.operation("diagnose", args={"manifest": Path("specs.yml")}) as op:
        op.warning(
            "collection incomplete",
            warnings=("logs unavailable",),
            errors=("logs: pod not found",),
            changed=0,
            context={"bundle": Path("/tmp/bundle"), "extra": Opaque()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert record["args"] == {"manifest": "specs.yml"}
    assert result["status"] == "warning"
    assert result["warnings"] == ["logs unavailable"]
    assert result["errors"] == ["logs: pod not found"]
    assert result["context"] == {"bundle": "/tmp/bundle", "extra": "<opaque>"}


def test_error_without_details_lists_its_message(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("apply") as op:
        op.error("cycle detected", errors=None, context={"members": {"a"}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["cycle detected"]
    assert result["context"] == {"members": "{'a'}"}


def test_operation_records_exit_without_result(tmp_path: Path) -> None:
    """An exit raised inside the scope is recorded with its code."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(typer.Exit):
        with logger.operation("apply"):
            raise typer.Exit(code=3)

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 3


def test_each_logger_writes_human_lines_once(tmp_path: Path) -> None:
    """Successive loggers on one directory never duplicate human log lines."""
    for command in ("plan", "apply", "diagnose"):
        logger = StructuredLogger(tmp_path / "logs")
        with logger.operation(command) as op:
            op.success("ok")
        logger.close()

    lines = (tmp_path / "logs" / HUMAN_LOG_NAME).read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert [line.split("INFO ", 1)[1].split(" ", 1)[0] for line in lines] == ["plan", "apply", "diagnose"]


def test_close_releases_the_handler_and_allows_reuse(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")
    with logger.operation("plan") as op:
        op.success("first")

    logger.close()
    logger.close()
    assert logger._handler is None  # type: ignore[attr-defined]

    with logger.operation("plan") as op:
        op.success("second")
    text = (tmp_path / "logs" / HUMAN_LOG_NAME).read_text(encoding="utf-8")
    assert text.count("plan [success]") == 2
