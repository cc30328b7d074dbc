"""RPC transformer that forwards Bot API calls to a remote executor.

In RPC mode the process never talks to Telegram itself: every API call is
POSTed as ``{"method": ..., **params}`` to a relay server, which performs
the call and returns Telegram's native JSON. Attachments travel inline as
``file_data: {base64, filename}``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

import httpx

from tgrelay.config.accounts import RpcConfig

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 30.0

ApiCall = Callable[[str, dict[str, Any], "asyncio.Event | None"], Awaitable[Any]]
RpcErrorHook = Callable[[str, Exception], None]


class RpcError(Exception):
    """Base class for failures on the RPC path."""

    pass


class RpcHttpError(RpcError):
    """The RPC endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"RPC HTTP {status_code}")


class RpcTimeoutError(RpcError):
    """The call did not finish within the per-call timeout."""

    pass


class RpcCancelledError(RpcError):
    """The caller's abort signal fired before the call finished."""

    pass


class UnsupportedInputFileError(RpcError):
    """An InputFile source that cannot be turned into bytes."""

    pass


class InputFile:
    """A file to upload, built explicitly by the caller.

    ``source`` is raw bytes, a local :class:`~pathlib.Path`, or a string that
    is either an ``http(s)://`` / ``file://`` URL or a local path.
    """

    def __init__(self, source: bytes | bytearray | Path | str, filename: str | None = None) -> None:
        self.source = source
        if filename is None and isinstance(source, Path):
            filename = source.name
        elif filename is None and isinstance(source, str) and "://" not in source:
            filename = Path(source).name
        self.filename = filename

    def __repr__(self) -> str:
        return f"InputFile(filename={self.filename!r})"

    async def read(self, client: httpx.AsyncClient) -> bytes:
        source = self.source
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        if isinstance(source, Path):
            return await asyncio.to_thread(source.read_bytes)
        if isinstance(source, str):
            if source.startswith(("http://", "https://")):
                resp = await client.get(source)
                resp.raise_for_status()
                return resp.content
            if source.startswith("file://"):
                return await asyncio.to_thread(Path(source[len("file://"):]).read_bytes)
            return await asyncio.to_thread(Path(source).read_bytes)
        raise UnsupportedInputFileError(
            f"Unsupported InputFile data type for RPC: {type(source).__name__}"
        )


async def input_file_to_file_data(
    input_file: InputFile, client: httpx.AsyncClient,
) -> dict[str, str]:
    content = await input_file.read(client)
    data = {"base64": base64.b64encode(content).decode("ascii")}
    if input_file.filename:
        data["filename"] = input_file.filename
    return data


async def _encode_item(value: Any, client: httpx.AsyncClient) -> Any:
    if isinstance(value, InputFile):
        return {"file_data": await input_file_to_file_data(value, client)}
    if isinstance(value, dict):
        return await encode_payload_for_rpc(value, client)
    if isinstance(value, (list, tuple)):
        return [await _encode_item(item, client) for item in value]
    return value


async def encode_payload_for_rpc(
    payload: dict[str, Any], client: httpx.AsyncClient,
) -> dict[str, Any]:
    """Return a JSON-ready copy of ``payload`` with every InputFile inlined.

    A file held directly by a key becomes a sibling ``file_data`` entry and
    the key keeps the placeholder ``"file_data"`` so the relay server knows
    the media kind. Files inside lists become ``{"file_data": ...}`` items.
    """
    result: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, InputFile):
            result["file_data"] = await input_file_to_file_data(value, client)
            result[key] = "file_data"
        else:
            result[key] = await _encode_item(value, client)
    return result


class RpcTransformer:
    """Middleware for :class:`~tgrelay.bot.api.BotApiClient` calls.

    Methods in ``exclude_methods`` skip RPC and go to ``prev`` (the direct
    call). Failures are reported to ``on_error`` once and re-raised; this
    class never retries.
    """

    def __init__(
        self,
        rpc_url: str,
        rpc_headers: dict[str, str] | None = None,
        rpc_timeout: float = DEFAULT_RPC_TIMEOUT,
        exclude_methods: Iterable[str] = (),
        on_error: RpcErrorHook | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._rpc_headers = dict(rpc_headers or {})
        self._timeout = rpc_timeout
        self._exclude = frozenset(exclude_methods)
        self._on_error = on_error
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        rpc: RpcConfig,
        on_error: RpcErrorHook | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RpcTransformer:
        return cls(
            rpc_url=rpc.rpc_url,
            rpc_headers=rpc.rpc_headers,
            rpc_timeout=rpc.rpc_timeout,
            exclude_methods=rpc.exclude_methods,
            on_error=on_error,
            transport=transport,
        )

    async def __call__(
        self,
        prev: ApiCall,
        method: str,
        payload: dict[str, Any] | None,
        abort: asyncio.Event | None = None,
    ) -> Any:
        if method in self._exclude:
            return await prev(method, payload or {}, abort)
        try:
            return await run_with_cancel_scope(
                self._forward(method, payload or {}), self._timeout, abort,
            )
        except Exception as exc:
            if self._on_error:
                self._on_error(method, exc)
            raise

    async def _forward(self, method: str, payload: dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json", **self._rpc_headers}
        async with httpx.AsyncClient(transport=self._transport) as client:
            encoded = await encode_payload_for_rpc(payload, client)
            resp = await client.post(
                self._rpc_url, json={"method": method, **encoded}, headers=headers,
            )
        if not resp.is_success:
            raise RpcHttpError(resp.status_code)
        return resp.json()


async def run_with_cancel_scope(
    call: Awaitable[Any], timeout: float, abort: asyncio.Event | None = None,
) -> Any:
    """Run ``call`` until it finishes, ``timeout`` elapses, or ``abort`` is set.

    Whatever loses the race is cancelled and awaited before returning.
    """
    task = asyncio.ensure_future(call)
    watchers: set[asyncio.Future[Any]] = {task}
    abort_task: asyncio.Future[Any] | None = None
    if abort is not None:
        abort_task = asyncio.ensure_future(abort.wait())
        watchers.add(abort_task)
    try:
        done, _ = await asyncio.wait(
            watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        pending = [w for w in watchers if not w.done()]
        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    if task in done:
        return task.result()
    if abort_task is not None and abort_task in done:
        raise RpcCancelledError("call aborted")
    raise RpcTimeoutError(f"call timed out after {timeout}s")
