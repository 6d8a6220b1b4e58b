"""
AccessController - fleet management service in front of many gateways.

The AC serves its REST surface below /api. After auth() every call carries
a bearer token that is refreshed in the background; gateways obtained with
gateway(mac) share that token and route their calls through the AC.
"""

from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable

from .auth import CredentialLease, CredentialRefresher
from .config_loader import AC_API_SUFFIX, SessionOptions
from .errors import FirmwareNotFoundError
from .executor import RequestSpec
from .gateway import Gateway
from .logging_setup import get_logger
from .session import CredentialCell, normalize_address
from .streams import StreamHandle

logger = get_logger(__name__)

# Placeholder host the gateway replaces with the AC's public address
FIRMWARE_DOWNLOAD_BASE = "http://use_ac_pub_ip/firmware/download"


class AccessController(Gateway):
    """Client for an AC; its device endpoints address the AC itself"""

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        credential: CredentialCell | None = None,
    ):
        if options is not None and options.address:
            address = normalize_address(options.address)
            if not address.endswith(AC_API_SUFFIX):
                address += AC_API_SUFFIX
            options = replace(options, address=address)
        super().__init__(options, credential=credential)
        self.refresher = CredentialRefresher(self)

    async def auth(self, developer: str, secret: str, auto_refresh: bool = True) -> CredentialLease:
        """Authenticate with the developer key and secret from the AC settings page"""
        return await self.refresher.authenticate(developer, secret, auto_refresh)

    def gateway(self, mac: str) -> Gateway:
        """Gateway whose calls the AC forwards to the device with this MAC"""
        return self.scope_to("mac", mac)

    # ── Gateway inventory ─────────────────────────────────────

    async def get_all_gateways(self) -> list:
        return await self.req("/ac/ap")

    async def get_online_gateways(self) -> list:
        gateways = await self.get_all_gateways()
        return [g for g in gateways if g.get("status") == "online"]

    async def discover_gateways(self) -> list:
        """Gateways that reported in but are not managed yet"""
        gateways = await self.req("/ac/ap-discover")
        # the last element is the number of licenses left, not a gateway
        return gateways[:-1]

    async def add_gateway(self, name: str, mac: str) -> Any:
        return await self.req("/ac/ap", "POST", body={"name": name, "mac": mac})

    async def gateway_status(self) -> StreamHandle:
        """Gateway online/offline changes arrive on `events.gateway_status`"""
        return await self.listen("/cassia/hubStatus", "gateway_status")

    # ── Positioning ───────────────────────────────────────────

    async def get_location_by_gateway(self, gateway_mac: str | None = None) -> Any:
        return await self.req(f"/middleware/position/by-ap/{gateway_mac or '*'}")

    async def get_location_by_device(self, device_mac: str | None = None) -> Any:
        return await self.req(f"/middleware/position/by-device/{device_mac or '*'}")

    # ── Auto-selection (APS) ──────────────────────────────────

    async def aps_selection_switch(self, enabled: bool = True) -> Any:
        """Enable or disable automatic gateway selection"""
        return await self.req("/aps/ap-select-switch", "POST", body={"flag": 1 if enabled else 0})

    async def aps_selection_connect(self, aps: list[str], devices: list[str]) -> Any:
        """Connect devices through whichever of the listed gateways fits best"""
        return await self.req(
            "/aps/connections/connect", "POST", body={"aps": aps, "devices": devices}
        )

    async def aps_selection_disconnect(self, devices: list[str]) -> Any:
        return await self.req("/aps/connections/disconnect", "POST", body={"devices": devices})

    async def aps_events(self) -> StreamHandle:
        """Combined stream of all APS events, delivered on `events.aps_events`"""
        return await self.listen("/aps/events", "aps-events")

    # ── Firmware & containers ─────────────────────────────────

    async def get_firmwares(self, kind: str) -> list:
        """
        Firmware images published on the AC.

        Args:
            kind: "router" (or "gateway"), "container" or "app"
        """
        if kind == "gateway":
            kind = "router"
        firmwares = await self.req("/ac/firmware")
        return firmwares["firmware"][kind]

    async def _find_firmware(self, kind: str, version: str) -> dict:
        for firmware in await self.get_firmwares(kind):
            if firmware.get("version") == version:
                return firmware
        raise FirmwareNotFoundError(kind, version)

    async def upgrade_gateway(self, mac: str, version: str) -> Any:
        firmware = await self._find_firmware("gateway", version)
        logger.info("Upgrading gateway %s to %s", mac, version)
        return await self.req(
            f"/ac/ap/{mac}/upgrade", "POST", body={"mac": mac, "firmware": firmware["id"]}
        )

    async def install_container(self, mac: str, version: str) -> Any:
        firmware = await self._find_firmware("container", version)
        logger.info("Installing container %s on %s", version, mac)
        return await self.req(
            "/cassia/container/ac_install",
            "POST",
            query={"mac": mac},
            body={
                "operation": "download",
                "imgfile": firmware["path"],
                "imgsize": firmware["size"],
                "imgurl": f"{FIRMWARE_DOWNLOAD_BASE}/{firmware['id']}/container",
            },
        )

    async def install_container_app(self, mac: str, version: str) -> Any:
        firmware = await self._find_firmware("app", version)
        logger.info("Installing container app %s on %s", version, mac)
        return await self.req(
            "/cassia/container/app/ac_install",
            "POST",
            query={"mac": mac},
            body={
                "name": firmware["version"],
                "operation": "download",
                "pkgname": firmware["path"],
                "pkgsize": firmware["size"],
                "pkgurl": f"{FIRMWARE_DOWNLOAD_BASE}/{firmware['id']}/app",
            },
        )

    # ── Reporting ─────────────────────────────────────────────

    async def export(self, fields: Iterable[str], path: str | Path) -> Path:
        """Download the AC settings export for the given fields into path"""
        spec = RequestSpec(
            path="/ac/setting/export/all",
            query={"fields": ",".join(fields)},
            parse_json=False,
        )
        return await self.requests.execute_to_file(spec, path)

    async def statistics(self, item: str, start: int | str, end: int | str) -> Any:
        return await self.req(f"/ac/stats/{item}/{start}/{end}/query")

    async def dashboard(self, kind: str) -> Any:
        return await self.req(f"/ac/dashboard/{kind}")

    async def api_status(self, query: dict | None = None) -> Any:
        return await self.req("/v2/status", query=query or {})
