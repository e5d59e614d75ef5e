"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re
import string

from podtail.models.config import (
    ClusterConfig,
    LogConfig,
    MetricsConfig,
    OutputConfig,
    PodtailConfig,
    QueryConfig,
)
from podtail.models.targets import ContainerState

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}
_TEMPLATE_FIELDS = {"message", "node_name", "namespace", "pod_name", "container_name"}


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"PODTAIL_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def parse_duration(value: str) -> int:
    """Convert a duration like ``90s``, ``15m`` or ``48h`` to seconds."""
    if not re.match(r"^[0-9]+(s|m|h)$", value):
        raise ValueError(f"Invalid duration format: {value}")
    return int(value[:-1]) * _DURATION_UNITS[value[-1]]


def compile_pattern(value: str) -> re.Pattern[str]:
    try:
        return re.compile(value)
    except re.error as exc:
        raise ValueError(f"Invalid regular expression {value!r}: {exc}") from exc


def compile_patterns(values: list[str] | str) -> list[re.Pattern[str]]:
    """Compile a list of regexes, or a comma separated string of them."""
    if isinstance(values, str):
        values = [v for v in values.split(",") if v]
    return [compile_pattern(v) for v in values]


def validate_template(value: str) -> str:
    """Reject templates that reference fields a Tail cannot supply."""
    if not value:
        return value
    try:
        parsed = list(string.Formatter().parse(value))
    except ValueError as exc:
        raise ValueError(f"Invalid template: {exc}") from exc
    for _, field_name, _, _ in parsed:
        if field_name is None:
            continue
        if field_name not in _TEMPLATE_FIELDS:
            raise ValueError(f"Unknown template field {field_name!r}. Must be one of {sorted(_TEMPLATE_FIELDS)}")
    return value


def validate_container_state(value: str) -> ContainerState:
    try:
        return ContainerState(value.lower())
    except ValueError as exc:
        valid = [s.value for s in ContainerState]
        raise ValueError(f"Invalid container state: {value}. Must be one of {valid}") from exc


def validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def validate_log_format(value: str) -> str:
    if value.lower() not in ("json", "console"):
        raise ValueError(f"Invalid log format: {value}. Must be 'json' or 'console'")
    return value.lower()


def load_config() -> PodtailConfig:
    """Load configuration from PODTAIL_* environment variables."""
    exclude_container = _env("EXCLUDE_CONTAINER", "")
    return PodtailConfig(
        cluster=ClusterConfig(
            kubeconfig=_env("KUBECONFIG", ""),
            context=_env("CONTEXT", ""),
            namespace=_env("NAMESPACE", ""),
            all_namespaces=_env_bool("ALL_NAMESPACES", False),
        ),
        query=QueryConfig(
            pod_query=compile_pattern(_env("POD_QUERY", ".*")),
            container_query=compile_pattern(_env("CONTAINER", ".*")),
            exclude_container_query=compile_pattern(exclude_container) if exclude_container else None,
            label_selector=_env("SELECTOR", ""),
            init_containers=_env_bool("INIT_CONTAINERS", True),
            container_state=validate_container_state(_env("CONTAINER_STATE", "running")),
        ),
        output=OutputConfig(
            timestamps=_env_bool("TIMESTAMPS", False),
            since_seconds=parse_duration(_env("SINCE", "48h")),
            tail_lines=_env_int("TAIL", -1, min_val=-1),
            template=validate_template(_env("TEMPLATE", "")),
            include=compile_patterns(_env("INCLUDE", "")),
            exclude=compile_patterns(_env("EXCLUDE", "")),
        ),
        metrics=MetricsConfig(
            port=_env_int("METRICS_PORT", 0, min_val=0, max_val=65535),
        ),
        log=LogConfig(
            level=validate_log_level(_env("LOG_LEVEL", "warning")),
            format=validate_log_format(_env("LOG_FORMAT", "console")),
        ),
    )
