from __future__ import annotations

import json
import logging
import sys
import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from labeller.src.__main__ import JSONFormatter, RestartOnCompletion, main


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 Authorization: Bearer abc.def.ghi url=/x?access_token=qwerty"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message
        assert "qwerty" not in message


class TestRestartOnCompletion:
    def test_exits_with_status_zero_when_enabled(self) -> None:
        exit_fn = MagicMock()

        RestartOnCompletion(enabled=True, exit_fn=exit_fn)()

        exit_fn.assert_called_once_with(0)

    def test_logs_once_and_keeps_running_when_disabled(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        exit_fn = MagicMock()
        terminate = RestartOnCompletion(enabled=False, exit_fn=exit_fn)

        with caplog.at_level(logging.INFO, logger="labeller.src.__main__"):
            terminate()
            terminate()

        exit_fn.assert_not_called()
        assert caplog.text.count("EXIT_ON_COMPLETION is disabled") == 1


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _fake_watcher(self, kind: str) -> MagicMock:
        watcher = MagicMock()
        watcher.kind = kind
        watcher.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        watcher.run_forever.side_effect = fake_run_forever
        return watcher

    def test_main_starts_one_watcher_per_configured_kind(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("LABELLED_KINDS", "configmaps,customresourcedefinitions")
        monkeypatch.setenv("EXIT_ON_COMPLETION", "true")

        resource_kinds = {
            "configmaps": MagicMock(name="configmaps"),
            "customresourcedefinitions": MagicMock(name="customresourcedefinitions"),
        }
        built: list[MagicMock] = []
        build_calls: list[dict[str, Any]] = []

        def fake_build_watcher(resource_kind: Any, **kwargs: Any) -> MagicMock:
            kind = next(name for name, value in resource_kinds.items() if value is resource_kind)
            build_calls.append(kwargs)
            watcher = self._fake_watcher(kind)
            built.append(watcher)
            return watcher

        with (
            patch("labeller.src.__main__.load_kube_configuration") as mock_load,
            patch("labeller.src.__main__.build_clients"),
            patch("labeller.src.__main__.build_resource_kinds", return_value=resource_kinds),
            patch("labeller.src.__main__.build_watcher", side_effect=fake_build_watcher),
            patch("labeller.src.__main__.start_health_server") as mock_health,
            patch("labeller.src.__main__.signal.signal"),
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once()
        assert [watcher.kind for watcher in built] == ["configmaps", "customresourcedefinitions"]
        for watcher in built:
            watcher.run_forever.assert_called_once()
            watcher.request_stop.assert_called_once()
        assert set(mock_health.call_args.kwargs["ready"]) == {
            "configmaps",
            "customresourcedefinitions",
        }
        assert build_calls[0]["arbiter"].kind == "configmaps"
        assert build_calls[0]["terminate"] is build_calls[1]["terminate"]
        assert build_calls[0]["terminate"].enabled is True
        mock_health.return_value.shutdown.assert_called_once()
