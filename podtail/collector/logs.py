"""Log stream client: follows the log of a single container.

Failures are classified so a Tail can decide whether to retry:

TargetGoneError      -- the pod or container no longer exists (HTTP 404).
TransientStreamError -- anything else that may succeed on a later attempt
                        (connection drops, timeouts, container still starting).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from podtail.models.targets import TailOptions
from podtail.observability.logging import get_logger

_log = get_logger("collector.logs")

_NOT_FOUND = 404


class StreamError(Exception):
    """Base class for log stream failures."""


class TargetGoneError(StreamError):
    """The target container is permanently gone; retrying cannot help."""


class TransientStreamError(StreamError):
    """The stream failed in a way that may recover on reconnect."""


class LogStreamClient(Protocol):
    """Anything that can open a follow stream for one container."""

    def stream(
        self,
        namespace: str,
        pod: str,
        container: str,
        options: TailOptions,
    ) -> AsyncIterator[str]: ...


class KubeLogStreamClient:
    """Streams container logs through ``CoreV1Api.read_namespaced_pod_log``."""

    def __init__(self, v1: Any) -> None:
        self._v1 = v1

    async def stream(
        self,
        namespace: str,
        pod: str,
        container: str,
        options: TailOptions,
    ) -> AsyncIterator[str]:
        """Yield decoded log lines until the container's log ends.

        Raises TargetGoneError or TransientStreamError; a clean return means
        the container stopped writing (it exited).
        """
        kwargs: dict[str, Any] = {
            "name": pod,
            "namespace": namespace,
            "container": container,
            "follow": True,
            "timestamps": options.timestamps,
            "_preload_content": False,
        }
        if options.since_seconds > 0:
            kwargs["since_seconds"] = options.since_seconds
        if options.tail_lines is not None:
            kwargs["tail_lines"] = options.tail_lines

        try:
            resp = await self._v1.read_namespaced_pod_log(**kwargs)
        except ApiException as exc:
            raise _classify_status(exc.status, str(exc.reason)) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientStreamError(f"opening stream: {exc}") from exc

        try:
            if resp.status >= 400:
                raise _classify_status(resp.status, resp.reason or "")
            async for raw in resp.content:
                yield raw.decode("utf-8", errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientStreamError(f"reading stream: {exc}") from exc
        finally:
            resp.release()


def _classify_status(status: int | None, reason: str) -> StreamError:
    if status == _NOT_FOUND:
        return TargetGoneError(f"target not found: {reason}")
    _log.debug("log_stream_http_error", status=status, reason=reason)
    return TransientStreamError(f"HTTP {status}: {reason}")
