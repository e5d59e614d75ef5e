"""Unit tests for KubeLogStreamClient failure classification."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from podtail.collector.logs import KubeLogStreamClient, TargetGoneError, TransientStreamError
from podtail.models.targets import TailOptions


class _Content:
    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error

    def __aiter__(self):  # type: ignore[no-untyped-def]
        return self._gen()

    async def _gen(self):  # type: ignore[no-untyped-def]
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def _response(status: int = 200, chunks: list[bytes] | None = None, error: Exception | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.reason = "Not Found" if status == 404 else "OK"
    resp.content = _Content(chunks or [], error)
    return resp


def _client(resp: MagicMock | None = None, side_effect: Exception | None = None) -> tuple[KubeLogStreamClient, MagicMock]:
    v1 = MagicMock()
    v1.read_namespaced_pod_log = AsyncMock(return_value=resp, side_effect=side_effect)
    return KubeLogStreamClient(v1), v1


async def _collect(client: KubeLogStreamClient, options: TailOptions | None = None) -> list[str]:
    return [line async for line in client.stream("ns", "p1", "c1", options or TailOptions())]


class TestStreaming:
    async def test_yields_decoded_lines_and_releases(self) -> None:
        resp = _response(chunks=[b"hello\n", b"caf\xc3\xa9\n", b"bad \xff\n"])
        client, _ = _client(resp)
        assert await _collect(client) == ["hello\n", "café\n", "bad \ufffd\n"]
        resp.release.assert_called_once()

    async def test_request_arguments(self) -> None:
        client, v1 = _client(_response())
        await _collect(client, TailOptions(timestamps=True, since_seconds=60, tail_lines=10))
        v1.read_namespaced_pod_log.assert_awaited_once_with(
            name="p1",
            namespace="ns",
            container="c1",
            follow=True,
            timestamps=True,
            _preload_content=False,
            since_seconds=60,
            tail_lines=10,
        )

    async def test_unlimited_history_omits_tail_lines(self) -> None:
        client, v1 = _client(_response())
        await _collect(client, TailOptions(tail_lines=None))
        assert "tail_lines" not in v1.read_namespaced_pod_log.await_args.kwargs


class TestClassification:
    async def test_404_status_is_terminal(self) -> None:
        client, _ = _client(_response(status=404))
        with pytest.raises(TargetGoneError):
            await _collect(client)

    async def test_404_api_exception_is_terminal(self) -> None:
        client, _ = _client(side_effect=ApiException(status=404, reason="Not Found"))
        with pytest.raises(TargetGoneError):
            await _collect(client)

    async def test_400_is_transient(self) -> None:
        """Container still being created answers 400 Bad Request."""
        client, _ = _client(_response(status=400))
        with pytest.raises(TransientStreamError):
            await _collect(client)

    async def test_connection_error_on_open_is_transient(self) -> None:
        client, _ = _client(side_effect=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(TransientStreamError):
            await _collect(client)

    async def test_connection_drop_mid_stream_is_transient(self) -> None:
        resp = _response(chunks=[b"one\n"], error=aiohttp.ClientPayloadError("reset"))
        client, _ = _client(resp)
        lines: list[str] = []
        with pytest.raises(TransientStreamError):
            async for line in client.stream("ns", "p1", "c1", TailOptions()):
                lines.append(line)
        assert lines == ["one\n"]
        resp.release.assert_called_once()
