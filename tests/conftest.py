"""Pytest configuration and shared fixtures for cassia-client tests."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from cassia_client.config_loader import SessionOptions
from cassia_client.gateway import Gateway


# ============================================================================
# Fake gateway / AC server
# ============================================================================


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict[str, str]
    headers: dict[str, str]
    body: str

    def json(self) -> Any:
        return json.loads(self.body)


@dataclass
class Reply:
    status: int = 200
    body: Any = None
    text: str | None = None
    raw: bytes | None = None

    def render(self) -> web.Response:
        if self.raw is not None:
            return web.Response(status=self.status, body=self.raw,
                                content_type="application/octet-stream")
        if self.text is not None:
            return web.Response(status=self.status, text=self.text)
        return web.Response(
            status=self.status,
            text=json.dumps(self.body, separators=(",", ":")),
            content_type="application/json",
        )


@dataclass
class FakeStream:
    """Server side of one SSE endpoint; frames are queued until the client reads them"""

    status: int = 200
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    connected: asyncio.Event = field(default_factory=asyncio.Event)

    def send(self, data: str, event: str | None = None) -> None:
        frame = f"event: {event}\n" if event else ""
        frame += f"data: {data}\n\n"
        self.queue.put_nowait(frame)

    def send_json(self, value: Any) -> None:
        self.send(json.dumps(value))

    def drop(self) -> None:
        """End the response, the client sees the connection go away"""
        self.queue.put_nowait(None)


class FakeRemote:
    """In-process HTTP server standing in for a gateway or AC"""

    def __init__(self):
        self.requests: list[RecordedRequest] = []
        self._replies: dict[tuple[str, str], list[Reply]] = {}
        self._streams: dict[str, FakeStream] = {}
        self.app = web.Application()
        self.app.router.add_route("*", "/{tail:.*}", self._handle)
        self.server = TestServer(self.app)

    @property
    def address(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"

    def reply(self, method: str, path: str, body: Any = None, status: int = 200,
              text: str | None = None, raw: bytes | None = None) -> None:
        """Queue a reply; the last queued reply for a route is repeated"""
        self._replies.setdefault((method.upper(), path), []).append(Reply(status, body, text, raw))

    def stream(self, path: str, status: int = 200) -> FakeStream:
        stream = FakeStream(status=status)
        self._streams[path] = stream
        return stream

    def requests_to(self, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.path == path]

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(RecordedRequest(
            method=request.method,
            path=request.path,
            query=dict(request.query),
            headers=dict(request.headers),
            body=await request.text(),
        ))

        if request.query.get("event") == "1" and request.path in self._streams:
            return await self._serve_stream(request, self._streams[request.path])

        replies = self._replies.get((request.method, request.path))
        if not replies:
            return web.Response(status=404, text='{"error":"not found"}')
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        return reply.render()

    async def _serve_stream(self, request: web.Request, stream: FakeStream) -> web.StreamResponse:
        if stream.status != 200:
            return web.Response(status=stream.status, text="denied")

        response = web.StreamResponse(status=200)
        response.content_type = "text/event-stream"
        await response.prepare(request)
        stream.connected.set()

        while True:
            try:
                frame = await asyncio.wait_for(stream.queue.get(), 0.05)
            except asyncio.TimeoutError:
                if request.transport is None or request.transport.is_closing():
                    break
                continue
            if frame is None:
                break
            await response.write(frame.encode("utf-8"))
        return response

    async def close(self) -> None:
        for stream in self._streams.values():
            stream.drop()
        await self.server.close()


@pytest_asyncio.fixture
async def remote():
    """Running fake gateway/AC server"""
    fake = FakeRemote()
    await fake.server.start_server()
    try:
        yield fake
    finally:
        await fake.close()


@pytest_asyncio.fixture
async def gateway(remote):
    """Gateway client pointed at the fake server"""
    gw = Gateway(SessionOptions(address=remote.address))
    try:
        yield gw
    finally:
        await gw.close()


async def next_event(queue: asyncio.Queue, timeout: float = 2.0):
    """Wait for the next value a listener put into queue"""
    return await asyncio.wait_for(queue.get(), timeout)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
