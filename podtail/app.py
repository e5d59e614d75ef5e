"""Orchestration engine for podtail.

Bridges the pod watcher's two Target streams into registry mutations and
Tail lifecycle calls. Three kinds of task run for the lifetime of a run:
the added consumer, the removed consumer and one streaming task per Tail.

Startup order: config → logging → metrics → K8s client → namespace → watch
              → consumers

Setup failures (cluster connection, namespace resolution, watch) abort the
run with SetupError before any Tail is created. Per-target streaming
problems never reach this module.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from podtail.collector.logs import KubeLogStreamClient, LogStreamClient
from podtail.collector.watcher import watch
from podtail.models.config import ClusterConfig, PodtailConfig
from podtail.models.targets import TailOptions, Target
from podtail.observability.logging import get_logger, setup_logging
from podtail.observability.metrics import serve_metrics
from podtail.registry import TailRegistry
from podtail.tail import Tail

if TYPE_CHECKING:
    import structlog

_SERVICE_ACCOUNT_NAMESPACE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

WatchFn = Callable[..., Awaitable[tuple[AsyncIterator[Target], AsyncIterator[Target]]]]


class SetupError(Exception):
    """Raised when the run cannot be set up; nothing has been tailed yet."""

    def __init__(self, message: str, cause: Exception) -> None:
        super().__init__(f"{message}: {cause}")
        self.cause = cause


def build_tail_options(config: PodtailConfig) -> TailOptions:
    """Snapshot the per-run options shared by every Tail."""
    output = config.output
    return TailOptions(
        timestamps=output.timestamps,
        since_seconds=output.since_seconds,
        include=tuple(output.include),
        exclude=tuple(output.exclude),
        namespace=config.cluster.all_namespaces,
        tail_lines=output.tail_lines if output.tail_lines >= 0 else None,
    )


class Orchestrator:
    """Keeps exactly one live Tail per target identity.

    ``handle_added`` and ``handle_removed`` do all their registry work
    without awaiting, so on the event loop each one completes before the
    other consumer can observe the same identity.
    """

    def __init__(
        self,
        registry: TailRegistry,
        log_client: LogStreamClient,
        template: str,
        options: TailOptions,
        out: Callable[[str], None] | None = None,
        err: Callable[[str], None] | None = None,
    ) -> None:
        self.registry = registry
        self._log_client = log_client
        self._template = template
        self._options = options
        self._out = out
        self._err = err
        self._tasks: set[asyncio.Task[None]] = set()
        self._log: structlog.stdlib.BoundLogger = get_logger("orchestrator")

    def handle_added(self, target: Target) -> Tail | None:
        """Start a Tail for *target* unless an active one already exists.

        Returns the new Tail, or None for a duplicate observation.
        """
        target_id = target.get_id()

        existing = self.registry.get(target_id)
        if existing is not None:
            if existing.is_active():
                return None
            existing.close()
            self.registry.clear(target_id)
            self._log.debug("tail_replaced", target=target_id)

        tail = Tail(
            target.node,
            target.namespace,
            target.pod,
            target.container,
            self._template,
            self._options,
            out=self._out,
            err=self._err,
        )
        # register before starting so a racing removal can always find it
        self.registry.set(target_id, tail)

        task = tail.start(self._log_client)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return tail

    def handle_removed(self, target: Target) -> None:
        target_id = target.get_id()
        tail = self.registry.get(target_id)
        if tail is None:
            return
        tail.close()
        self.registry.clear(target_id)

    async def consume_added(self, added: AsyncIterator[Target]) -> None:
        async for target in added:
            self.handle_added(target)

    async def consume_removed(self, removed: AsyncIterator[Target]) -> None:
        async for target in removed:
            self.handle_removed(target)

    def shutdown(self) -> None:
        """Close every registered Tail without waiting for its task to drain."""
        for tail in self.registry.snapshot():
            tail.close()
            self.registry.clear(tail.target_id)
        for task in list(self._tasks):
            task.cancel()


# ---------------------------------------------------------------------------
# Cluster connection
# ---------------------------------------------------------------------------


async def connect(cluster: ClusterConfig) -> tuple[Any, Any, str]:
    """Load credentials and return ``(api_client, core_v1, default_namespace)``.

    Uses the in-cluster service account unless a kubeconfig or context was
    requested explicitly or no service account is mounted.
    """
    # Import lazily: kubernetes-asyncio probes the environment on import.
    import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
    from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

    default_namespace = ""
    in_cluster = False
    if not (cluster.kubeconfig or cluster.context):
        try:
            k8s_config.load_incluster_config()
            in_cluster = True
        except k8s_config.ConfigException:
            pass

    if in_cluster:
        if _SERVICE_ACCOUNT_NAMESPACE.exists():
            default_namespace = _SERVICE_ACCOUNT_NAMESPACE.read_text().strip()
    else:
        await k8s_config.load_kube_config(
            config_file=cluster.kubeconfig or None,
            context=cluster.context or None,
        )
        default_namespace = _kubeconfig_namespace(k8s_config, cluster)

    api_client = k8s_client.ApiClient()
    return api_client, k8s_client.CoreV1Api(api_client), default_namespace or "default"


def _kubeconfig_namespace(k8s_config: Any, cluster: ClusterConfig) -> str:
    contexts, active = k8s_config.list_kube_config_contexts(config_file=cluster.kubeconfig or None)
    if cluster.context:
        active = next((c for c in contexts if c.get("name") == cluster.context), active)
    return str((active or {}).get("context", {}).get("namespace") or "")


def resolve_namespace(cluster: ClusterConfig, default_namespace: str) -> str:
    """All namespaces wins over a specific namespace; empty means all."""
    if cluster.all_namespaces:
        return ""
    return cluster.namespace or default_namespace


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


async def run(
    config: PodtailConfig,
    stop: asyncio.Event | None = None,
    *,
    v1: Any = None,
    log_client: LogStreamClient | None = None,
    registry: TailRegistry | None = None,
    watch_fn: WatchFn = watch,
    out: Callable[[str], None] | None = None,
    err: Callable[[str], None] | None = None,
) -> None:
    """Tail every matching container until *stop* is set.

    Raises SetupError if the cluster connection, namespace or watch cannot be
    established. Otherwise returns cleanly once *stop* is set, or once either
    consumer ends on its own (its error is logged). Cancelling the calling
    task has the same effect but re-raises CancelledError.
    Tail tasks are cancelled, not awaited, on the way out.
    """
    log = get_logger("app")
    api_client = None
    default_namespace = "default"
    if v1 is None:
        try:
            api_client, v1, default_namespace = await connect(config.cluster)
        except Exception as exc:
            raise SetupError("unable to connect to cluster", exc) from exc

    namespace = resolve_namespace(config.cluster, default_namespace)
    query = config.query
    try:
        added, removed = await watch_fn(
            v1,
            namespace,
            query.pod_query,
            query.container_query,
            query.exclude_container_query,
            query.init_containers,
            query.container_state,
            query.label_selector,
        )
    except Exception as exc:
        if api_client is not None:
            await api_client.close()
        raise SetupError("failed to set up watch", exc) from exc

    orchestrator = Orchestrator(
        registry if registry is not None else TailRegistry(),
        log_client if log_client is not None else KubeLogStreamClient(v1),
        config.output.resolved_template(config.cluster.all_namespaces),
        build_tail_options(config),
        out=out,
        err=err,
    )
    halt = stop if stop is not None else asyncio.Event()

    def consumer_done(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("consumer_failed", consumer=task.get_name(), error=str(exc), exc_info=exc)
        else:
            log.warning("consumer_finished", consumer=task.get_name())
        halt.set()

    consumers = [
        asyncio.create_task(orchestrator.consume_added(added), name="consume-added"),
        asyncio.create_task(orchestrator.consume_removed(removed), name="consume-removed"),
    ]
    for task in consumers:
        task.add_done_callback(consumer_done)
    log.info("watching", namespace=namespace or "<all>", selector=query.label_selector)

    try:
        await halt.wait()
    finally:
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        for stream in (added, removed):
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        orchestrator.shutdown()
        if api_client is not None:
            await api_client.close()
        log.info("stopped")


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: PodtailConfig) -> None:
    """Set up logging and metrics, register OS signals, run until interrupted."""
    setup_logging(config.log.level, config.log.format)
    log = get_logger("app")
    log.info("podtail starting", version=_podtail_version())
    serve_metrics(config.metrics.port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await run(config, stop)
    except SetupError as exc:
        log.critical("fatal setup error", error=str(exc.cause))
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def _podtail_version() -> str:
    from podtail import __version__

    return __version__
