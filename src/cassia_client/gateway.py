"""
Gateway - REST/SSE surface of a BLE gateway (router/hub).

Each method maps one endpoint onto the request executor or the stream
broker. Streaming methods return the open StreamHandle and relay frames to
the matching channel on `gateway.events`; install an `events.error`
listener before relying on them.

Usage:
    async with Gateway.from_address("192.168.1.20") as gw:
        gw.events.error.on(print)
        gw.events.scan.on(lambda device: print(device["bdaddrs"]))
        handle = await gw.scan(active=1)
        ...
        await handle.close()
"""

from typing import Any, Iterable

from .config_loader import DEFAULT_ADDRESS_TYPE, DEFAULT_CONNECT_TIMEOUT_MS, SessionOptions
from .executor import RequestExecutor, RequestSpec
from .logging_setup import get_logger
from .session import CredentialCell, Session
from .streams import EventStreamBroker, StreamHandle, StreamSpec

logger = get_logger(__name__)


def _csv(value: str | Iterable[str] | None) -> str | None:
    """Comma-join filter lists the way the gateway expects them"""
    if value is None or isinstance(value, str):
        return value
    return ",".join(value)


class Gateway(Session):
    """BLE gateway reached directly or through an AC"""

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        credential: CredentialCell | None = None,
    ):
        super().__init__(options, credential=credential)
        self.requests = RequestExecutor(self)
        self.streams = EventStreamBroker(self)

    def _derive(self, options: SessionOptions) -> "Gateway":
        return Gateway(options, credential=self.credential)

    async def req(self, path: str, method: str = "GET", **kwargs) -> Any:
        """Shortcut for a one-shot call, kwargs are RequestSpec fields"""
        return await self.requests.execute(RequestSpec(path=path, method=method, **kwargs))

    async def listen(self, path: str, event_name: str, query: dict | None = None) -> StreamHandle:
        """Relay the stream at path to the channel named event_name"""
        return await self.streams.relay(StreamSpec(path=path, query=query or {}), event_name)

    # ── Configuration ─────────────────────────────────────────

    async def get_info(self, *fields: str) -> Any:
        """Gateway configuration, optionally limited to some fields"""
        query = {"fields": ",".join(fields)} if fields else {}
        return await self.req("/cassia/info", query=query)

    async def set_info(self, config: dict) -> Any:
        return await self.req("/cassia/info", "POST", body=config)

    async def set_high_speed_params(self, params: dict) -> Any:
        return await self.req("/gap/hs-mlink-params", "POST", body=params)

    # ── Scanning & connections ────────────────────────────────

    async def scan(
        self,
        active: int | None = None,
        filter_name: str | Iterable[str] | None = None,
        filter_rssi: int | None = None,
        filter_uuid: str | Iterable[str] | None = None,
        **extra: Any,
    ) -> StreamHandle:
        """
        Start scanning; advertisements arrive on `events.scan`.

        Args:
            active: 1 for active scanning, 0 for passive
            filter_name: Only devices with these names
            filter_rssi: Only devices with an RSSI above this value
            filter_uuid: Only devices advertising these service UUIDs
            extra: Further query parameters understood by the gateway

        Returns:
            Open stream handle; close it to stop scanning
        """
        query = {
            "active": active,
            "filter_name": _csv(filter_name),
            "filter_rssi": filter_rssi,
            "filter_uuid": _csv(filter_uuid),
            **extra,
        }
        return await self.listen("/gap/nodes", "scan", query)

    async def connect(
        self,
        device_mac: str,
        addr_type: str = DEFAULT_ADDRESS_TYPE,
        timeout: int = DEFAULT_CONNECT_TIMEOUT_MS,
    ) -> Any:
        """
        Connect a device.

        Args:
            device_mac: Device MAC address
            addr_type: "public" or "random"
            timeout: Connect timeout in milliseconds, enforced by the gateway
        """
        logger.debug("Connecting %s (%s, %dms)", device_mac, addr_type, timeout)
        return await self.req(
            f"/gap/nodes/{device_mac}/connection",
            "POST",
            body={"type": addr_type, "timeout": timeout},
        )

    async def disconnect(self, device_mac: str) -> Any:
        return await self.req(f"/gap/nodes/{device_mac}/connection", "DELETE")

    async def get_connected_devices(self) -> Any:
        return await self.req("/gap/nodes", query={"connection_state": "connected"})

    # ── GATT ──────────────────────────────────────────────────

    async def write_by_handle(
        self, device_mac: str, handle: str | int, value: str, no_response: bool = False
    ) -> Any:
        """Write a hex value to a characteristic handle"""
        query = {"noresponse": 1} if no_response else {}
        return await self.req(
            f"/gatt/nodes/{device_mac}/handle/{handle}/value/{value}", query=query
        )

    async def write_multi(self, device_mac: str, values: Iterable[dict]) -> list:
        """Write [{"handle": h, "value": v}, ...] strictly one after another"""
        results = []
        for item in values:
            results.append(await self.write_by_handle(device_mac, item["handle"], item["value"]))
        return results

    async def read_by_handle(self, device_mac: str, handle: str | int) -> Any:
        return await self.req(f"/gatt/nodes/{device_mac}/handle/{handle}/value")

    async def get_characteristics(self, device_mac: str, uuid: str | None = None) -> Any:
        return await self.req(f"/gatt/nodes/{device_mac}/characteristics", query={"uuid": uuid})

    async def listen_notify(self) -> StreamHandle:
        """GATT notifications of connected devices arrive on `events.notify`"""
        return await self.listen("/gatt/nodes", "notify")

    async def listen_connection_state(self) -> StreamHandle:
        """Connect/disconnect changes arrive on `events.connection_state`"""
        return await self.listen("/management/nodes/connection-state", "connection_state")

    # ── Container ─────────────────────────────────────────────

    async def start_container(self) -> Any:
        return await self.req("/cassia/container/start", "POST")

    async def stop_container(self) -> Any:
        return await self.req("/cassia/container/stop", "POST")

    async def reset_container(self) -> Any:
        return await self.req("/cassia/container/reset", "POST")

    async def delete_container(self) -> Any:
        return await self.req("/cassia/container", "DELETE")

    async def conns(self) -> Any:
        return await self.req("/conns")
