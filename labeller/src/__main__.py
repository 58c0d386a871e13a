from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from labeller.src.config import load_config
from labeller.src.controller import KindWatcher, build_watcher
from labeller.src.health import start_health_server
from labeller.src.kube import build_clients, build_resource_kinds, load_kube_configuration
from labeller.src.metrics import METRICS
from labeller.src.tracker import CompletionTracker

RUNTIME_VERSION = "0.1.0"
WATCHER_STOP_TIMEOUT_SECONDS = 45
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(log_level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


class RestartOnCompletion:
    """Terminate callback handed to every watcher.

    Exits the process immediately with status 0 so the supervisor restarts it
    and the next instance only watches objects that still need attention.
    In-flight reconciles on other kinds are abandoned on purpose.  When
    disabled, the completion is logged once and the process keeps running.
    """

    def __init__(self, enabled: bool, exit_fn: Callable[[int], object] = os._exit) -> None:
        self.enabled = enabled
        self.exit_fn = exit_fn
        self._announced = False
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            if not self.enabled:
                if not self._announced:
                    LOGGER.info(
                        "Every object is labelled; EXIT_ON_COMPLETION is disabled, "
                        "continuing to watch"
                    )
                    self._announced = True
                return
            LOGGER.info("detected that every object is labelled, exiting to re-start the process...")
            self.exit_fn(0)


def _start_watcher_thread(
    watcher: KindWatcher, shutdown_event: threading.Event
) -> threading.Thread:
    def _run_watcher() -> None:
        unexpected_exit = False
        try:
            watcher.run_forever(shutdown_event=shutdown_event)
            unexpected_exit = not shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error(
                    "Watcher for %s exited without a stop signal; terminating process",
                    watcher.kind,
                )
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Watcher thread for %s crashed", watcher.kind)
        finally:
            if unexpected_exit:
                shutdown_event.set()

    thread = threading.Thread(target=_run_watcher, name=f"watch-{watcher.kind}", daemon=True)
    thread.start()
    return thread


def main() -> None:
    """Labeller entrypoint: configure logging, start one watcher per kind, and wait for shutdown."""
    labeller_config = load_config()
    configure_logging(labeller_config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    resource_kinds = build_resource_kinds(build_clients())

    tracker = CompletionTracker(labeller_config.labelled_kinds)
    terminate = RestartOnCompletion(enabled=labeller_config.exit_on_completion)
    watchers = [
        build_watcher(
            resource_kinds[kind],
            arbiter=tracker.arbiter(kind),
            terminate=terminate,
            watch_timeout_seconds=labeller_config.watch_timeout_seconds,
            retry_max_backoff_seconds=labeller_config.retry_max_backoff_seconds,
        )
        for kind in labeller_config.labelled_kinds
    ]

    health_server = start_health_server(
        ready={watcher.kind: watcher.ready for watcher in watchers},
        port=labeller_config.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info("Labelling %s", ", ".join(labeller_config.labelled_kinds))
    threads = [_start_watcher_thread(watcher, shutdown_event) for watcher in watchers]

    shutdown_event.wait()

    for watcher in watchers:
        watcher.request_stop()
    for thread in threads:
        thread.join(timeout=WATCHER_STOP_TIMEOUT_SECONDS)
        if thread.is_alive():
            LOGGER.error(
                "Watcher thread %s did not stop within %ss",
                thread.name,
                WATCHER_STOP_TIMEOUT_SECONDS,
            )

    health_server.shutdown()
    LOGGER.info("Labeller stopped")


if __name__ == "__main__":
    main()
