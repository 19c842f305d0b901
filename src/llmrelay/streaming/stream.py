"""Provider-agnostic chunk streams.

Every stream yields canonical ``Chunk`` values in wire order and produces at
most one terminal (``done=True``) chunk. After the terminal chunk, ``next()``
raises ``StopAsyncIteration`` on a clean end or re-raises the stream's error.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, NoReturn, Protocol, runtime_checkable

import httpx

from llmrelay._http import transport_error
from llmrelay.errors import APIError, ErrorKind, StreamCancelledError
from llmrelay.types import (
    Chunk,
    Completion,
    Message,
    ToolCall,
    ToolCallFunction,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_BLOCKED_FINISH_REASONS = frozenset({"safety", "refusal"})
_MALFORMED_PAYLOAD_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


@runtime_checkable
class ChatStream(Protocol):
    """Async source of canonical chunks."""

    async def next(self) -> Chunk: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Chunk]: ...


class LineParser(Protocol):
    """Converts one SSE ``data:`` payload into a canonical chunk.

    ``parse_line`` raises ValueError on malformed payloads, which the engine
    skips, and returns None for events that carry nothing for the caller.
    Well-formed JSON of the wrong shape surfaces as TypeError, AttributeError
    or KeyError from the parser and is skipped the same way.
    """

    def parse_line(self, data: str) -> Chunk | None: ...

    def is_done(self, data: str) -> bool: ...


class _BaseStream:
    """Terminal-state bookkeeping shared by every stream."""

    def __init__(self) -> None:
        self._finished = False
        self._error: BaseException | None = None
        self._closed = False

    def __aiter__(self) -> _BaseStream:
        return self

    async def __anext__(self) -> Chunk:
        return await self.next()  # type: ignore[attr-defined]

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def error(self) -> BaseException | None:
        return self._error

    def _end(self) -> NoReturn:
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    def _terminal(self, chunk: Chunk, error: BaseException | None = None) -> Chunk:
        self._finished = True
        self._error = error
        if not chunk.done:
            chunk = replace(chunk, done=True)
        if error is not None and chunk.error is None:
            chunk = replace(chunk, error=str(error))
        return chunk

    async def __aenter__(self) -> _BaseStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()  # type: ignore[attr-defined]


def sse_data(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line or line.startswith(":"):
        return None
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload.strip()


class SSEStream(_BaseStream):
    """Reads an SSE response line by line and delegates payloads to a parser.

    Comment lines, blank lines and non-``data`` fields are skipped. Malformed
    payloads are logged and skipped. A transport error ends the stream with a
    terminal error chunk. ``close()`` is idempotent and may run while another
    task is waiting in ``next()``.
    """

    def __init__(
        self,
        response: httpx.Response,
        parser: LineParser,
        *,
        provider: str = "",
    ) -> None:
        super().__init__()
        self._response = response
        self._parser = parser
        self._provider = provider
        self._lines = response.aiter_lines()
        self._lock = asyncio.Lock()

    async def next(self) -> Chunk:
        async with self._lock:
            if self._finished:
                return self._end()
            if self._closed:
                self._finished = True
                raise StopAsyncIteration
            return await self._read()

    async def _read(self) -> Chunk:
        while True:
            try:
                line = await anext(self._lines)
            except StopAsyncIteration:
                # Body ended without an explicit terminator.
                return self._terminal(Chunk())
            except httpx.HTTPError as e:
                if self._closed:
                    return self._terminal(Chunk())
                err = transport_error(e, provider=self._provider, phase="stream")
                logger.debug("%s stream transport error: %s", self._provider, e)
                return self._terminal(Chunk(), err)

            data = sse_data(line)
            if not data:
                continue
            if data == DONE_SENTINEL:
                return self._terminal(Chunk())
            try:
                chunk = self._parser.parse_line(data)
            except _MALFORMED_PAYLOAD_ERRORS as e:
                logger.debug("%s skipping malformed SSE payload: %s", self._provider, e)
                continue
            if chunk is None:
                continue
            if chunk.error:
                kind = (
                    ErrorKind.INVALID_REQUEST
                    if chunk.finish_reason in _BLOCKED_FINISH_REASONS
                    else ErrorKind.UNKNOWN
                )
                err = APIError(
                    chunk.error, kind=kind, provider=self._provider, phase="stream"
                )
                return self._terminal(chunk, err)
            if chunk.done or self._parser.is_done(data):
                return self._terminal(chunk)
            return chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class CancellableStream(_BaseStream):
    """Ends ``inner`` with a terminal error chunk once ``cancel`` is set."""

    def __init__(self, inner: ChatStream, cancel: asyncio.Event) -> None:
        super().__init__()
        self._inner = inner
        self._cancel = cancel

    def _cancelled(self) -> Chunk:
        return self._terminal(
            Chunk(), StreamCancelledError("stream cancelled by caller")
        )

    async def next(self) -> Chunk:
        if self._finished:
            return self._end()
        if self._cancel.is_set():
            chunk = self._cancelled()
            await self._inner.close()
            return chunk

        read = asyncio.ensure_future(self._inner.next())
        wait = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({read, wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            wait.cancel()
            if not read.done():
                read.cancel()
                await asyncio.wait({read})

        if read.cancelled():
            chunk = self._cancelled()
            await self._inner.close()
            return chunk
        try:
            chunk = read.result()
        except StopAsyncIteration:
            self._finished = True
            raise
        except Exception as e:
            self._finished = True
            self._error = e
            raise
        if chunk.done:
            self._finished = True
            self._error = getattr(self._inner, "error", None)
        return chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._inner.close()


class UsageRecordingStream(_BaseStream):
    """Passes ``inner`` through and reports the last usage seen once it ends.

    ``on_usage`` runs at most once, when the stream ends or is closed.
    Streams that never carry usage report nothing.
    """

    def __init__(self, inner: ChatStream, on_usage: Callable[[Usage], None]) -> None:
        super().__init__()
        self._inner = inner
        self._on_usage = on_usage
        self._usage: Usage | None = None
        self._reported = False

    @property
    def error(self) -> BaseException | None:
        return getattr(self._inner, "error", None)

    def _report(self) -> None:
        if self._reported:
            return
        self._reported = True
        if self._usage is not None:
            self._on_usage(self._usage)

    async def next(self) -> Chunk:
        try:
            chunk = await self._inner.next()
        except StopAsyncIteration:
            self._report()
            raise
        if chunk.usage is not None:
            self._usage = chunk.usage
        if chunk.done:
            self._report()
        return chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._report()
        await self._inner.close()


class MockStream(_BaseStream):
    """Replays a fixed chunk sequence.

    Non-streaming calls return a one-chunk MockStream carrying the full
    message.
    """

    def __init__(self, chunks: Iterable[Chunk]) -> None:
        super().__init__()
        self._chunks = list(chunks)
        self._pos = 0

    async def next(self) -> Chunk:
        if self._finished or self._closed:
            return self._end()
        if self._pos >= len(self._chunks):
            self._finished = True
            raise StopAsyncIteration
        chunk = self._chunks[self._pos]
        self._pos += 1
        if chunk.done:
            self._finished = True
        return chunk

    async def close(self) -> None:
        self._closed = True


class ErrorStream(_BaseStream):
    """Yields one terminal error chunk, then raises ``error``."""

    def __init__(self, error: BaseException) -> None:
        super().__init__()
        self._pending = error

    async def next(self) -> Chunk:
        if self._finished:
            return self._end()
        return self._terminal(Chunk(), self._pending)

    async def close(self) -> None:
        self._closed = True


async def collect_stream(stream: ChatStream) -> Completion:
    """Drain ``stream`` into one assistant message.

    Tool-call fragments are merged by index; the stream is always closed.
    """
    content: list[str] = []
    calls: dict[int, dict[str, str]] = {}
    usage: Usage | None = None
    finish_reason: str | None = None
    chunk_id = ""
    model = ""
    try:
        async for chunk in stream:
            if chunk.message is not None:
                return Completion(
                    message=chunk.message,
                    usage=chunk.usage,
                    finish_reason=chunk.finish_reason,
                    id=chunk.id,
                    model=chunk.model,
                )
            chunk_id = chunk_id or chunk.id
            model = model or chunk.model
            if chunk.content:
                content.append(chunk.content)
            for delta in chunk.tool_calls:
                entry = calls.setdefault(
                    delta.index, {"id": "", "name": "", "arguments": ""}
                )
                entry["id"] = entry["id"] or delta.id
                entry["name"] = entry["name"] or delta.name
                entry["arguments"] += delta.arguments
            if chunk.usage is not None:
                usage = chunk.usage
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason
    finally:
        await stream.close()

    tool_calls = [
        ToolCall(
            id=entry["id"] or f"call_{index}",
            function=ToolCallFunction(entry["name"], entry["arguments"]),
        )
        for index, entry in sorted(calls.items())
    ]
    return Completion(
        message=Message(
            role="assistant", content="".join(content), tool_calls=tool_calls
        ),
        usage=usage,
        finish_reason=finish_reason,
        id=chunk_id,
        model=model,
    )
