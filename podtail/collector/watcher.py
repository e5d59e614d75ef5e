"""PodWatcher: turns pod list-watch events into added/removed Target streams.

The watcher lists matching pods once during setup (so a bad namespace,
selector or credential fails fast), replays that list as ADDED events, then
follows a watch from the list's resourceVersion in a background task.

Expected disconnects are handled locally:
  * a closed watch is resumed from the last seen resourceVersion;
  * HTTP 410 Gone (resourceVersion too old) triggers a relist, and pods that
    vanished during the gap are reported as removed;
  * any other error is retried with exponential back-off (1s doubling to 30s).

Neither stream terminates until ``stop()`` is called or the owning run is
cancelled.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterator
from typing import Any

import aiohttp
from kubernetes_asyncio import watch as k8s_watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from podtail.models.targets import ContainerState, Target
from podtail.observability.logging import get_logger
from podtail.observability.metrics import watch_events_total

_log = get_logger("collector.watcher")

_BACKOFF_INITIAL = 1.0
_BACKOFF_MAX = 30.0
_WATCH_TIMEOUT_SECONDS = 300
_GONE = 410

_CLOSED = object()


class WatchSetupError(Exception):
    """Raised when the initial pod list cannot be obtained."""


class TargetStream:
    """Lazy, unbounded, single-pass async sequence of Targets.

    Once closed it stays exhausted: iterating it again ends immediately.
    """

    def __init__(self, kind: str, watcher: PodWatcher | None = None) -> None:
        self.kind = kind
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._watcher = watcher
        self._closed = False

    def put(self, target: Target) -> None:
        if self._closed:
            return
        watch_events_total.labels(kind=self.kind).inc()
        self._queue.put_nowait(target)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def aclose(self) -> None:
        """Stop the producing watcher, which closes both of its streams."""
        if self._watcher is not None:
            await self._watcher.stop()
        self.close()

    def __aiter__(self) -> TargetStream:
        return self

    async def __anext__(self) -> Target:
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the sentinel for any other consumer
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class PodWatcher:
    """Watches pods in one namespace (or all, for ``""``) and emits Targets."""

    def __init__(
        self,
        v1: Any,
        namespace: str,
        pod_query: re.Pattern[str],
        container_query: re.Pattern[str],
        exclude_container_query: re.Pattern[str] | None,
        init_containers: bool,
        container_state: ContainerState,
        label_selector: str,
    ) -> None:
        self._v1 = v1
        self._namespace = namespace
        self._pod_query = pod_query
        self._container_query = container_query
        self._exclude_container_query = exclude_container_query
        self._init_containers = init_containers
        self._container_state = container_state
        self._label_selector = label_selector

        self.added = TargetStream("added", self)
        self.removed = TargetStream("removed", self)

        # (namespace, name) -> last observed pod, used to diff across relists
        self._pods: dict[tuple[str, str], Any] = {}
        self._resource_version = ""
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """List pods and launch the background watch task.

        Raises WatchSetupError if the initial list fails.
        """
        try:
            await self._relist()
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise WatchSetupError(f"listing pods in namespace {self._namespace or '<all>'}: {exc}") from exc
        self._task = asyncio.create_task(self._run(), name="pod-watcher")
        self._task.add_done_callback(self._on_task_done)

    async def stop(self) -> None:
        """Cancel the watch task and close both streams. Safe to call twice."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.added.close()
        self.removed.close()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        # closing the streams ends both consumers
        if task.cancelled():
            return
        exc = task.exception()
        _log.error("watch_task_failed", error=str(exc) if exc else "exited", exc_info=exc)
        self.added.close()
        self.removed.close()

    # ------------------------------------------------------------------
    # List / watch
    # ------------------------------------------------------------------

    def _list_func(self) -> tuple[Any, tuple[Any, ...]]:
        if self._namespace:
            return self._v1.list_namespaced_pod, (self._namespace,)
        return self._v1.list_pod_for_all_namespaces, ()

    async def _relist(self) -> None:
        func, args = self._list_func()
        kwargs: dict[str, Any] = {}
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector
        pod_list = await func(*args, **kwargs)

        seen: dict[tuple[str, str], Any] = {}
        for pod in pod_list.items or []:
            seen[_pod_key(pod)] = pod
            self._handle_event("ADDED", pod)
        for key, pod in list(self._pods.items()):
            if key not in seen:
                self._handle_event("DELETED", pod)
        self._pods = seen
        self._resource_version = pod_list.metadata.resource_version or ""
        _log.debug("pods_listed", count=len(seen), resource_version=self._resource_version)

    async def _run(self) -> None:
        backoff = _BACKOFF_INITIAL
        func, args = self._list_func()
        while True:
            try:
                kwargs: dict[str, Any] = {
                    "resource_version": self._resource_version,
                    "timeout_seconds": _WATCH_TIMEOUT_SECONDS,
                }
                if self._label_selector:
                    kwargs["label_selector"] = self._label_selector
                async with k8s_watch.Watch().stream(func, *args, **kwargs) as stream:
                    async for event in stream:
                        if event["type"] == "ERROR":
                            raw = event.get("raw_object") or {}
                            raise ApiException(status=raw.get("code"), reason=raw.get("message"))
                        pod = event["object"]
                        self._handle_event(event["type"], pod)
                        self._resource_version = pod.metadata.resource_version or self._resource_version
                        backoff = _BACKOFF_INITIAL
            except asyncio.CancelledError:
                raise
            except ApiException as exc:
                if exc.status == _GONE:
                    _log.info("watch_expired_relisting", resource_version=self._resource_version)
                    await self._relist_with_backoff()
                    continue
                _log.warning("watch_api_error", status=exc.status, reason=exc.reason, retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                _log.warning("watch_connection_error", error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)
            except Exception as exc:
                _log.error("watch_unexpected_error", error=str(exc), retry_in=backoff, exc_info=True)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)

    async def _relist_with_backoff(self) -> None:
        backoff = _BACKOFF_INITIAL
        while True:
            try:
                await self._relist()
                return
            except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                _log.warning("relist_failed", error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _handle_event(self, event_type: str, pod: Any) -> None:
        """Classify one pod event into added/removed Targets."""
        if not self._pod_query.search(pod.metadata.name):
            return

        if event_type in ("ADDED", "MODIFIED"):
            self._pods[_pod_key(pod)] = pod
            for status in self._container_statuses(pod):
                if not self._container_selected(status.name):
                    continue
                if self._container_state.matches(status.state):
                    self.added.put(_target(pod, status.name))
        elif event_type == "DELETED":
            self._pods.pop(_pod_key(pod), None)
            for container in self._containers(pod):
                if self._container_selected(container.name):
                    self.removed.put(_target(pod, container.name))

    def _container_selected(self, name: str) -> bool:
        if not self._container_query.search(name):
            return False
        exclude = self._exclude_container_query
        return exclude is None or not exclude.search(name)

    def _container_statuses(self, pod: Any) -> Iterator[Any]:
        status = pod.status
        if status is None:
            return
        if self._init_containers:
            yield from status.init_container_statuses or []
        yield from status.container_statuses or []

    def _containers(self, pod: Any) -> Iterator[Any]:
        spec = pod.spec
        if spec is None:
            return
        if self._init_containers:
            yield from spec.init_containers or []
        yield from spec.containers or []


def _pod_key(pod: Any) -> tuple[str, str]:
    return (pod.metadata.namespace, pod.metadata.name)


def _target(pod: Any, container: str) -> Target:
    node = (pod.spec.node_name if pod.spec is not None else None) or ""
    return Target(node=node, namespace=pod.metadata.namespace, pod=pod.metadata.name, container=container)


async def watch(
    v1: Any,
    namespace: str,
    pod_query: re.Pattern[str],
    container_query: re.Pattern[str],
    exclude_container_query: re.Pattern[str] | None,
    init_containers: bool,
    container_state: ContainerState,
    label_selector: str,
) -> tuple[TargetStream, TargetStream]:
    """Start a PodWatcher and return its (added, removed) streams.

    Closing either stream with ``aclose()`` stops the watcher.
    """
    watcher = PodWatcher(
        v1,
        namespace,
        pod_query,
        container_query,
        exclude_container_query,
        init_containers,
        container_state,
        label_selector,
    )
    await watcher.start()
    return watcher.added, watcher.removed
