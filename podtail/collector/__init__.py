"""Collector package for podtail.

Talks to the Kubernetes API on behalf of the orchestration engine.

Submodules
----------
watcher -- PodWatcher: pod list-watch, relist recovery, added/removed Target streams.
logs    -- KubeLogStreamClient: follow one container's log, classify failures.
"""

from podtail.collector.logs import (
    KubeLogStreamClient,
    LogStreamClient,
    StreamError,
    TargetGoneError,
    TransientStreamError,
)
from podtail.collector.watcher import PodWatcher, TargetStream, WatchSetupError, watch

__all__ = [
    "KubeLogStreamClient",
    "LogStreamClient",
    "PodWatcher",
    "StreamError",
    "TargetGoneError",
    "TargetStream",
    "TransientStreamError",
    "WatchSetupError",
    "watch",
]
