"""Core data structures for podtail."""

from podtail.models.config import (
    ClusterConfig,
    LogConfig,
    MetricsConfig,
    OutputConfig,
    PodtailConfig,
    QueryConfig,
)
from podtail.models.targets import ContainerState, TailOptions, Target

__all__ = [
    "ClusterConfig",
    "ContainerState",
    "LogConfig",
    "MetricsConfig",
    "OutputConfig",
    "PodtailConfig",
    "QueryConfig",
    "TailOptions",
    "Target",
]
