"""
Event stream broker - SSE subscriptions relayed as domain events.

Each subscription is one EventSource connection owned by a StreamHandle.
The handle's pump task hands every unnamed SSE frame to its `messages`
channel; the broker's relay decodes those frames and re-emits them on the
session's typed channels (scan, notify, connection_state, ...).

A stream is never reconnected: when the remote side drops it the handle
reports StreamClosedError on its `errors` channel and closes.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlencode

import aiohttp
from aiohttp_sse_client import client as sse_client

from .errors import StreamClosedError, StreamDecodeError
from .events import EventChannel
from .executor import encode_query, merge_defaults
from .logging_setup import get_logger
from .session import Session

logger = get_logger(__name__)

# Query marker that switches an endpoint into streaming mode
STREAM_MARKER = {"event": "1"}
KEEP_ALIVE = "keep-alive"


class StreamState(Enum):
    """Stream subscription lifecycle, transitions only move forward"""
    PENDING = "pending"
    OPEN = "open"
    STREAMING = "streaming"
    CLOSED = "closed"


@dataclass
class StreamSpec:
    """Description of one SSE subscription relative to the session address"""

    path: str
    query: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


class StreamHandle:
    """
    Live SSE connection.

    Created PENDING, becomes OPEN once the server confirms the stream,
    STREAMING after the first frame, and CLOSED on close() or when the
    transport fails. Closing is the caller's job; there is no idle timeout.
    """

    def __init__(self, session: Session, url: str, headers: dict[str, str]):
        self.session = session
        self.url = url
        self.messages: EventChannel[sse_client.MessageEvent] = EventChannel("message")
        self.errors: EventChannel[Exception] = EventChannel("error")

        self._headers = headers
        self._state = StreamState.PENDING
        self._source: sse_client.EventSource | None = None
        self._task: asyncio.Task | None = None
        self._dropped = False
        self._released = False
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<StreamHandle {self.url} {self._state.value}>"

    async def __aenter__(self):
        if self._state is StreamState.PENDING:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is StreamState.CLOSED

    async def open(self) -> "StreamHandle":
        """Connect and start delivering frames; raises if the connection fails"""
        if self._state is not StreamState.PENDING:
            raise RuntimeError(f"stream already {self._state.value}")

        http = await self.session.ensure_http()
        self._source = sse_client.EventSource(
            self.url,
            session=http,
            max_connect_retry=0,
            on_error=self._on_transport_error,
            headers=dict(self._headers),
            ssl=self.session.ssl,
            timeout=aiohttp.ClientTimeout(total=None),
        )
        logger.debug("begin sse %s", self.url)
        try:
            await self._source.connect()
        except BaseException:
            self._state = StreamState.CLOSED
            await self._release()
            raise

        self._state = StreamState.OPEN
        self.session.track_stream(self)
        self._task = asyncio.create_task(self._pump())
        logger.info("Stream opened: %s", self.url)
        return self

    def _on_transport_error(self) -> None:
        """EventSource callback, fired when an open connection drops"""
        if self._state in (StreamState.OPEN, StreamState.STREAMING):
            self._dropped = True
            # EventSource is about to sleep and reconnect; stop it right there
            if self._task is not None and not self._task.done():
                self._task.cancel()

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                if self._state is StreamState.CLOSED:
                    break
                self._deliver(event)
        except asyncio.CancelledError:
            if not self._dropped:
                raise
            asyncio.current_task().uncancel()
        except Exception as e:
            if self._state is not StreamState.CLOSED:
                logger.warning("Stream %s failed: %s", self.url, e)
                self._state = StreamState.CLOSED
                self.errors.emit(e)
        else:
            if self._state is not StreamState.CLOSED:
                self._dropped = True

        if self._dropped and not self._released:
            logger.warning("Stream dropped by remote: %s", self.url)
            self._state = StreamState.CLOSED
            self.errors.emit(StreamClosedError(self.url))
        self._state = StreamState.CLOSED
        await self._release()

    def _deliver(self, event: sse_client.MessageEvent) -> None:
        # frames without an "event:" line arrive with type None
        if event.type not in (None, "", "message"):
            logger.debug("Ignoring named SSE event '%s' on %s", event.type, self.url)
            return
        if self._state is StreamState.OPEN:
            self._state = StreamState.STREAMING
        self.messages.emit(event)

    async def close(self) -> None:
        """Close the stream (idempotent)"""
        self._state = StreamState.CLOSED
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._release()

    async def wait_closed(self) -> None:
        """Wait until the stream reaches CLOSED"""
        await self._closed.wait()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._source is not None:
            await self._source.close()
        self.session.untrack_stream(self)
        self._closed.set()
        logger.debug("Stream closed: %s", self.url)


def is_keep_alive(payload: str) -> bool:
    """Heartbeat frames carry the keep-alive token instead of JSON"""
    return KEEP_ALIVE in payload


def decode_payload(payload: str) -> Any:
    """Decode a frame payload, raising StreamDecodeError on malformed JSON"""
    try:
        return json.loads(payload)
    except ValueError as e:
        raise StreamDecodeError(payload, e) from e


class EventStreamBroker:
    """Opens SSE subscriptions for a Session and relays them as domain events"""

    def __init__(self, session: Session):
        self.session = session

    def prepare(self, spec: StreamSpec) -> StreamHandle:
        """Build a PENDING handle; headers and query are snapshotted here"""
        headers = merge_defaults(self.session.default_headers(), spec.headers)
        query = merge_defaults(self.session.default_query(), spec.query)
        query.update(STREAM_MARKER)
        url = f"{self.session.url_for(spec.path)}?{urlencode(encode_query(query))}"
        return StreamHandle(self.session, url, headers)

    async def subscribe(self, spec: StreamSpec) -> StreamHandle:
        """Open a raw subscription; returns once the server confirmed it"""
        handle = self.prepare(spec)
        await handle.open()
        return handle

    async def relay(self, spec: StreamSpec, event_name: str) -> StreamHandle:
        """
        Open a subscription whose frames are emitted on the session channel
        named event_name. Keep-alive frames are dropped, undecodable frames
        and transport errors go to the session's error channel.
        """
        channel = self.session.events.channel(event_name)
        errors = self.session.events.error

        def on_message(event: sse_client.MessageEvent) -> None:
            payload = event.data
            if is_keep_alive(payload):
                return
            try:
                value = decode_payload(payload)
            except StreamDecodeError as e:
                logger.debug("Undecodable %s frame: %s", event_name, e)
                errors.emit(e)
                return
            channel.emit(value)

        handle = self.prepare(spec)
        handle.messages.on(on_message)
        handle.errors.on(errors.emit)
        await handle.open()
        return handle
