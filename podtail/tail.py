"""Tail: one live log-streaming session bound to one target container.

State machine::

    CREATED --start()--> ACTIVE --close()--> CLOSED
       |                                       ^
       +---------------close()-----------------+

A Tail never leaves CLOSED; a target that comes back gets a new Tail.
While ACTIVE the streaming task may hit a terminal condition (target gone,
container exited) after which ``is_active()`` is False even though the
state is still ACTIVE. The Tail stays registered until the Orchestrator
closes or replaces it.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from enum import StrEnum

import click

from podtail.collector.logs import LogStreamClient, TargetGoneError, TransientStreamError
from podtail.models.targets import TailOptions
from podtail.observability.logging import get_logger
from podtail.observability.metrics import (
    lines_total,
    stream_retries_total,
    tails_active,
    tails_closed_total,
    tails_started_total,
)

_RETRY_INITIAL = 0.5
_RETRY_MAX = 30.0


class TailState(StrEnum):
    """Lifecycle state of a Tail."""

    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


class TailStateError(Exception):
    """Raised when start() is called on a Tail that is not in CREATED."""


class Tail:
    """Streams, filters and renders the log of one container.

    Args:
        node, namespace, pod, container: the target being tailed.
        template: ``str.format`` template; fields are ``message``,
            ``node_name``, ``namespace``, ``pod_name`` and ``container_name``.
        options: run-wide TailOptions, shared by reference.
        out: sink for rendered lines (stdout by default).
        err: sink for the ``+``/``-`` start and stop markers (stderr by default).
    """

    def __init__(
        self,
        node: str,
        namespace: str,
        pod: str,
        container: str,
        template: str,
        options: TailOptions,
        out: Callable[[str], None] | None = None,
        err: Callable[[str], None] | None = None,
    ) -> None:
        self.node = node
        self.namespace = namespace
        self.pod = pod
        self.container = container
        self.template = template
        self.options = options
        self._out = out or click.echo
        self._err = err or functools.partial(click.echo, err=True)

        self._state = TailState.CREATED
        self._alive = False
        self._task: asyncio.Task[None] | None = None
        self._log = get_logger("tail", namespace=namespace, pod=pod, container=container)

    @property
    def target_id(self) -> str:
        return f"{self.namespace}/{self.pod}/{self.container}"

    @property
    def state(self) -> TailState:
        return self._state

    def __repr__(self) -> str:
        return f"<Tail {self.target_id} state={self._state.value} alive={self._alive}>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, client: LogStreamClient) -> asyncio.Task[None]:
        """Begin streaming in a background task and return that task.

        Must run inside an event loop. Raises TailStateError unless the
        Tail is freshly created.
        """
        if self._state is not TailState.CREATED:
            raise TailStateError(f"cannot start {self.target_id}: tail is {self._state.value}")
        self._state = TailState.ACTIVE
        self._alive = True
        tails_active.inc()
        tails_started_total.inc()

        self._err(self._marker("+", "green"))
        self._log.info("tail_started")
        self._task = asyncio.create_task(self._stream(client), name=f"tail:{self.target_id}")
        return self._task

    def is_active(self) -> bool:
        """True while started, not closed and the stream has not terminally failed."""
        return self._state is TailState.ACTIVE and self._alive

    def close(self) -> None:
        """Cancel streaming and release the stream. Repeated calls are no-ops."""
        if self._state is TailState.CLOSED:
            return
        was_started = self._state is TailState.ACTIVE
        self._state = TailState.CLOSED
        self._mark_inactive()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        if was_started:
            tails_closed_total.inc()
            self._err(self._marker("-", "red"))
        self._log.info("tail_closed")

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, client: LogStreamClient) -> None:
        delay = _RETRY_INITIAL
        try:
            while True:
                try:
                    async for line in client.stream(self.namespace, self.pod, self.container, self.options):
                        delay = _RETRY_INITIAL
                        self._emit(line)
                except TransientStreamError as exc:
                    stream_retries_total.inc()
                    self._log.warning("stream_retry", error=str(exc), retry_in=delay)
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, _RETRY_MAX)
                    continue
                except TargetGoneError as exc:
                    self._log.info("target_gone", error=str(exc))
                    return
                self._log.info("stream_ended")
                return
        except Exception as exc:
            self._log.error("tail_failed", error=str(exc), exc_info=True)
        finally:
            self._mark_inactive()

    def _emit(self, line: str) -> None:
        if self.options.is_excluded(line):
            lines_total.labels(result="filtered").inc()
            return
        lines_total.labels(result="emitted").inc()
        self._out(self.render(line))

    def render(self, line: str) -> str:
        return self.template.format(
            message=line.rstrip("\r\n"),
            node_name=self.node,
            namespace=self.namespace,
            pod_name=self.pod,
            container_name=self.container,
        )

    def _mark_inactive(self) -> None:
        if self._alive:
            self._alive = False
            tails_active.dec()

    def _marker(self, sign: str, colour: str) -> str:
        pod = click.style(self.pod, fg="cyan")
        container = click.style(self.container, fg="yellow")
        if self.options.namespace:
            return f"{click.style(sign, fg=colour)} {self.namespace} {pod} › {container}"
        return f"{click.style(sign, fg=colour)} {pod} › {container}"
