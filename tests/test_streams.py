import asyncio

import pytest
from conftest import next_event, wait_until

from cassia_client.errors import StreamClosedError, StreamDecodeError
from cassia_client.streams import (
    StreamSpec,
    StreamState,
    decode_payload,
    is_keep_alive,
)


def test_keep_alive_detection():
    assert is_keep_alive("keep-alive")
    assert is_keep_alive(":keep-alive")
    assert not is_keep_alive('{"mac":"AA"}')


def test_decode_payload():
    assert decode_payload('{"rssi":-60}') == {"rssi": -60}
    with pytest.raises(StreamDecodeError) as excinfo:
        decode_payload("{not json")
    assert excinfo.value.payload == "{not json"


@pytest.mark.asyncio
async def test_scan_relays_decoded_frames_and_skips_keep_alive(remote, gateway):
    stream = remote.stream("/gap/nodes")
    scans = asyncio.Queue()
    errors = asyncio.Queue()
    gateway.events.scan.on(scans.put_nowait)
    gateway.events.error.on(errors.put_nowait)

    handle = await gateway.scan(active=1)
    stream.send("keep-alive")
    stream.send('{"mac":"AA:BB:CC:DD:EE:FF","rssi":-60}')

    assert await next_event(scans) == {"mac": "AA:BB:CC:DD:EE:FF", "rssi": -60}
    await asyncio.sleep(0.05)
    assert scans.empty()
    assert errors.empty()
    assert handle.state is StreamState.STREAMING
    await handle.close()


@pytest.mark.asyncio
async def test_malformed_frame_reports_error_and_keeps_streaming(remote, gateway):
    stream = remote.stream("/gatt/nodes")
    notifications = asyncio.Queue()
    errors = asyncio.Queue()
    gateway.events.notify.on(notifications.put_nowait)
    gateway.events.error.on(errors.put_nowait)

    handle = await gateway.listen_notify()
    stream.send("{broken")
    stream.send_json({"id": "AA", "handle": 14, "value": "0102"})

    error = await next_event(errors)
    assert isinstance(error, StreamDecodeError)
    assert await next_event(notifications) == {"id": "AA", "handle": 14, "value": "0102"}
    assert errors.empty()
    assert not handle.closed
    await handle.close()


@pytest.mark.asyncio
async def test_subscription_carries_marker_defaults_and_token(remote, gateway):
    remote.stream("/management/nodes/connection-state")
    gateway.query["mac"] = "CC:1B:E0:00:00:01"
    gateway.headers["X-Site"] = "lab"
    gateway.set_token("tok")

    handle = await gateway.listen_connection_state()

    sent = remote.requests_to("/management/nodes/connection-state")[0]
    assert sent.query == {"mac": "CC:1B:E0:00:00:01", "event": "1"}
    assert sent.headers["Authorization"] == "Bearer tok"
    assert sent.headers["X-Site"] == "lab"
    assert sent.headers["Accept"] == "text/event-stream"
    await handle.close()


@pytest.mark.asyncio
async def test_raw_subscribe_lifecycle(remote, gateway):
    stream = remote.stream("/gap/nodes")
    handle = gateway.streams.prepare(StreamSpec(path="/gap/nodes", query={"active": 1}))
    assert handle.state is StreamState.PENDING
    assert "event=1" in handle.url
    assert "active=1" in handle.url

    messages = asyncio.Queue()
    handle.messages.on(messages.put_nowait)
    await handle.open()
    assert handle.state is StreamState.OPEN

    stream.send("hello")
    event = await next_event(messages)
    assert event.data == "hello"
    assert handle.state is StreamState.STREAMING

    await handle.close()
    await handle.close()
    assert handle.state is StreamState.CLOSED
    with pytest.raises(RuntimeError):
        await handle.open()


@pytest.mark.asyncio
async def test_unnamed_frames_are_relayed(remote, gateway):
    stream = remote.stream("/gatt/nodes")
    notifications = asyncio.Queue()
    gateway.events.notify.on(notifications.put_nowait)

    handle = await gateway.listen_notify()
    assert handle.state is StreamState.OPEN
    stream.send('{"id":"AA","value":"01"}')

    assert await next_event(notifications) == {"id": "AA", "value": "01"}
    assert handle.state is StreamState.STREAMING
    await handle.close()


@pytest.mark.asyncio
async def test_named_frames_are_not_relayed(remote, gateway):
    stream = remote.stream("/gap/nodes")
    scans = asyncio.Queue()
    gateway.events.scan.on(scans.put_nowait)

    handle = await gateway.scan()
    stream.send('{"ignored":true}', event="status")
    stream.send('{"mac":"AA"}')

    assert await next_event(scans) == {"mac": "AA"}
    await handle.close()


@pytest.mark.asyncio
async def test_subscribe_rejects_when_not_opened(remote, gateway):
    remote.stream("/gap/nodes", status=401)

    with pytest.raises(ConnectionError):
        await gateway.scan()

    assert not gateway._streams


@pytest.mark.asyncio
async def test_remote_drop_is_reported_not_reconnected(remote, gateway):
    stream = remote.stream("/gap/nodes")
    errors = asyncio.Queue()
    gateway.events.error.on(errors.put_nowait)

    handle = await gateway.scan()
    stream.drop()

    error = await next_event(errors, timeout=3)
    assert isinstance(error, StreamClosedError)
    await asyncio.wait_for(handle.wait_closed(), 3)
    assert handle.state is StreamState.CLOSED
    await asyncio.sleep(0.1)
    assert len(remote.requests_to("/gap/nodes")) == 1


@pytest.mark.asyncio
async def test_sibling_streams_share_session_channels(remote, gateway):
    scan_stream = remote.stream("/gap/nodes")
    notify_stream = remote.stream("/gatt/nodes")
    scans = asyncio.Queue()
    notifications = asyncio.Queue()
    gateway.events.scan.on(scans.put_nowait)
    gateway.events.notify.on(notifications.put_nowait)

    scan_handle = await gateway.scan()
    notify_handle = await gateway.listen_notify()
    notify_stream.send_json({"value": "01"})
    scan_stream.send_json({"mac": "AA"})

    assert await next_event(scans) == {"mac": "AA"}
    assert await next_event(notifications) == {"value": "01"}

    await scan_handle.close()
    notify_stream.send_json({"value": "02"})
    assert await next_event(notifications) == {"value": "02"}
    await notify_handle.close()


@pytest.mark.asyncio
async def test_session_close_closes_open_streams(remote, gateway):
    remote.stream("/gap/nodes")
    handle = await gateway.scan()
    assert handle in gateway._streams

    await gateway.close()

    assert handle.closed
    await wait_until(lambda: not gateway._streams)
