from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from labeller.src.kube import KNOWN_KINDS


class ConfigError(RuntimeError):
    """Raised when the labeller configuration is invalid."""


@dataclass(frozen=True)
class LabellerConfig:
    """Immutable labeller configuration loaded at startup.

    Attributes:
        log_level:      Root log level name (``LOG_LEVEL``).
        health_port:    Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        labelled_kinds: Plural resource names to watch and label.
        watch_timeout_seconds: Server-side timeout of each watch request.
        retry_max_backoff_seconds: Upper bound of the per-object retry delay.
        exit_on_completion: Exit once every kind is labelled so the pod
                        restarts with narrower watches.
    """

    log_level: str
    health_port: int
    labelled_kinds: tuple[str, ...]
    watch_timeout_seconds: int
    retry_max_backoff_seconds: int
    exit_on_completion: bool


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_kinds(raw: str | None) -> tuple[str, ...]:
    """Parse a comma-separated list of plural kind names, keeping order and dropping repeats."""
    if raw is None or not raw.strip():
        return KNOWN_KINDS

    kinds: list[str] = []
    for part in raw.split(","):
        kind = part.strip().lower()
        if not kind or kind in kinds:
            continue
        if kind not in KNOWN_KINDS:
            raise ConfigError(
                f"LABELLED_KINDS contains unknown kind {kind!r}; "
                f"expected any of: {', '.join(KNOWN_KINDS)}"
            )
        kinds.append(kind)
    if not kinds:
        raise ConfigError(f"LABELLED_KINDS must name at least one kind, got: {raw!r}")
    return tuple(kinds)


def load_config(env: Mapping[str, str] | None = None) -> LabellerConfig:
    """Load labeller config from the environment.

    Environment variables (with defaults):
        ``LOG_LEVEL``                : ``INFO``.
        ``HEALTH_PORT``              : ``8080``.
        ``LABELLED_KINDS``           : every known kind.
        ``WATCH_TIMEOUT_SECONDS``    : ``30``.
        ``RETRY_MAX_BACKOFF_SECONDS``: ``30``.
        ``EXIT_ON_COMPLETION``       : ``true``.
    """
    values = env if env is not None else os.environ

    return LabellerConfig(
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        labelled_kinds=parse_kinds(values.get("LABELLED_KINDS")),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        retry_max_backoff_seconds=env_int(values, "RETRY_MAX_BACKOFF_SECONDS", 30, minimum=1),
        exit_on_completion=parse_bool(values.get("EXIT_ON_COMPLETION"), default=True),
    )
