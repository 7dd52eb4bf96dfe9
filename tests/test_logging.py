"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from storectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_json_line_with_steps(tmp_path: Path) -> None:
    """Each operation appends one JSON record carrying its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "install",
        args={"site_name": "DemoShop", "install_path": Path("C:/inetpub/DemoShop")},
        target={"kind": "instance", "name": "DemoShop"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("install.database", detail="Database ready")
        op.add_step("install.service", status="warning", detail="service files missing")
        op.warning("Installed with warnings.", warnings=["service files missing"], changed=1)

    (record,) = _records(logger)
    assert record["command"] == "install"
    assert record["args"] == {"site_name": "DemoShop", "install_path": "C:/inetpub/DemoShop"}
    assert record["lock_wait_ms"] == 12
    assert [step["name"] for step in record["steps"]] == ["install.database", "install.service"]
    assert record["steps"][1]["status"] == "warning"
    assert record["result"]["status"] == "warning"
    assert record["result"]["warnings"] == ["service files missing"]


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """An operation that never sets a result is recorded as completed."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("detect"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"


def test_operation_records_unhandled_error(tmp_path: Path) -> None:
    """Exceptions escaping the block are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("migrate"):
            raise RuntimeError("store unreadable")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert "store unreadable" in record["result"]["message"]


def test_error_result_carries_exit_code(tmp_path: Path) -> None:
    """Explicit errors keep the exit code the command returned."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("uninstall") as op:
        op.error("No installation found.", rc=3)

    (record,) = _records(logger)
    assert record["result"]["rc"] == 3
    assert record["result"]["errors"] == ["No installation found."]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
