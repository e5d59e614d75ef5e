"""Target and tail option data structures."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ContainerState(StrEnum):
    """Container state a target must be in to be tailed."""

    RUNNING = "running"
    WAITING = "waiting"
    TERMINATED = "terminated"
    ALL = "all"

    def matches(self, state: Any) -> bool:
        """Return True if *state* (a V1ContainerState) is in this state."""
        if state is None:
            return False
        if self is ContainerState.ALL:
            return any(getattr(state, attr, None) is not None for attr in ("running", "waiting", "terminated"))
        return getattr(state, self.value, None) is not None


@dataclass(frozen=True)
class Target:
    """One container within one pod: the unit of log tailing.

    Produced fresh by the watcher on every observation. Two targets with the
    same namespace, pod and container share an identity even if the node
    differs.
    """

    node: str
    namespace: str
    pod: str
    container: str

    def get_id(self) -> str:
        """Return the registry key ``namespace/pod/container``."""
        return f"{self.namespace}/{self.pod}/{self.container}"


@dataclass(frozen=True)
class TailOptions:
    """Options applied to every Tail created during one run."""

    timestamps: bool = False
    since_seconds: int = 172800
    include: tuple[re.Pattern[str], ...] = field(default_factory=tuple)
    exclude: tuple[re.Pattern[str], ...] = field(default_factory=tuple)
    namespace: bool = False  # show namespace in rendered lines
    tail_lines: int | None = None  # None streams the whole history

    def is_excluded(self, line: str) -> bool:
        """Apply include then exclude filters; True means drop the line."""
        if self.include and not any(rex.search(line) for rex in self.include):
            return True
        return any(rex.search(line) for rex in self.exclude)
