"""Shared fakes for podtail tests.

Provides a scriptable log stream client, a fake watcher and small helpers
so orchestration can be exercised without touching a real cluster.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import pytest

from podtail.collector.watcher import TargetStream
from podtail.models.targets import TailOptions, Target

# ---------------------------------------------------------------------------
# Log stream client
# ---------------------------------------------------------------------------


@dataclass
class Live:
    """Script step: yield *lines* then keep the stream open forever."""

    lines: list[str] = field(default_factory=list)


class FakeLogClient:
    """LogStreamClient whose streams follow a per-target script.

    Each open consumes one step from ``scripts[target_id]``:
      * an Exception instance is raised;
      * a list of lines is yielded, then the stream ends (container exited);
      * a Live step yields its lines and then blocks.
    With no script left the stream is Live with no lines.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[object]] = defaultdict(list)
        self.opens: dict[str, int] = defaultdict(int)
        self.options_seen: list[TailOptions] = []

    def script(self, target_id: str, *steps: object) -> None:
        self.scripts[target_id].extend(steps)

    async def stream(
        self,
        namespace: str,
        pod: str,
        container: str,
        options: TailOptions,
    ) -> AsyncIterator[str]:
        key = f"{namespace}/{pod}/{container}"
        self.opens[key] += 1
        self.options_seen.append(options)
        steps = self.scripts[key]
        step = steps.pop(0) if steps else Live()

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, Live):
            for line in step.lines:
                yield line
            await asyncio.Event().wait()
        else:
            for line in step:  # type: ignore[attr-defined]
                yield line


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


class FakeWatch:
    """Stands in for ``podtail.collector.watcher.watch``."""

    def __init__(self, error: Exception | None = None) -> None:
        self.added = TargetStream("added")
        self.removed = TargetStream("removed")
        self.error = error
        self.calls: list[tuple[object, ...]] = []

    async def __call__(self, v1: object, namespace: str, *args: object) -> tuple[TargetStream, TargetStream]:
        self.calls.append((namespace, *args))
        if self.error is not None:
            raise self.error
        return self.added, self.removed


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_target(
    pod: str = "p1",
    container: str = "c1",
    namespace: str = "ns",
    node: str = "node-1",
) -> Target:
    return Target(node=node, namespace=namespace, pod=pod, container=container)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it is true or fail the test after *timeout*."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def log_client() -> FakeLogClient:
    return FakeLogClient()


@pytest.fixture
def fast_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove retry back-off delays from Tail and the watcher."""
    monkeypatch.setattr("podtail.tail._RETRY_INITIAL", 0.0)
    monkeypatch.setattr("podtail.collector.watcher._BACKOFF_INITIAL", 0.0)
