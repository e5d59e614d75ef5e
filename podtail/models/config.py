"""Configuration data structures."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from podtail.models.targets import ContainerState

DEFAULT_TEMPLATE = "{pod_name} {container_name} {message}"
ALL_NAMESPACES_TEMPLATE = "{namespace} {pod_name} {container_name} {message}"


@dataclass
class ClusterConfig:
    """Kubernetes connection configuration."""

    kubeconfig: str = ""
    context: str = ""
    namespace: str = ""
    all_namespaces: bool = False


@dataclass
class QueryConfig:
    """Which pods and containers are selected for tailing."""

    pod_query: re.Pattern[str] = field(default_factory=lambda: re.compile(".*"))
    container_query: re.Pattern[str] = field(default_factory=lambda: re.compile(".*"))
    exclude_container_query: re.Pattern[str] | None = None
    label_selector: str = ""
    init_containers: bool = True
    container_state: ContainerState = ContainerState.RUNNING


@dataclass
class OutputConfig:
    """How log lines are fetched, filtered and rendered."""

    timestamps: bool = False
    since_seconds: int = 172800
    tail_lines: int = -1
    template: str = ""
    include: list[re.Pattern[str]] = field(default_factory=list)
    exclude: list[re.Pattern[str]] = field(default_factory=list)

    def resolved_template(self, all_namespaces: bool) -> str:
        """Return the configured template or the default for the display mode."""
        if self.template:
            return self.template
        return ALL_NAMESPACES_TEMPLATE if all_namespaces else DEFAULT_TEMPLATE


@dataclass
class MetricsConfig:
    """Prometheus exposition configuration."""

    port: int = 0  # 0 disables the metrics endpoint


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "warning"
    format: str = "console"  # json or console


@dataclass
class PodtailConfig:
    """Top-level podtail configuration."""

    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log: LogConfig = field(default_factory=LogConfig)
