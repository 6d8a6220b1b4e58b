"""
Session - target address, default headers/query and bearer credential.

A Session is the shared state every request and stream subscription reads
at call time. It also owns the aiohttp ClientSession used for the calls and
the typed event channels streams relay into.
"""

import re
from typing import Any

import aiohttp

from .config_loader import SessionOptions
from .events import SessionEvents
from .logging_setup import get_logger

logger = get_logger(__name__)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def normalize_address(address: str) -> str:
    """Prefix http:// when no scheme is given and drop trailing slashes.

    Idempotent: normalizing an already normalized address returns it unchanged.
    The address is not validated beyond that.
    """
    address = address.strip()
    if not _SCHEME_RE.match(address):
        address = "http://" + address
    return address.rstrip("/")


class CredentialCell:
    """Mutable holder for the current bearer token.

    Shared by reference between a Session and the sessions delegated from it,
    so a token refresh on the parent is seen by every child.
    """

    def __init__(self, token: str | None = None):
        self._token = token
        self.generation = 0 if token is None else 1

    @property
    def token(self) -> str | None:
        return self._token

    def install(self, token: str) -> None:
        """Replace the current token"""
        self._token = token
        self.generation += 1

    def clear(self) -> None:
        self._token = None

    @property
    def authorization(self) -> str | None:
        if self._token is None:
            return None
        return f"Bearer {self._token}"


class Session:
    """
    Connection state for one gateway or AC endpoint.

    `headers` and `query` are plain dicts; edits take effect on the next call.
    When a bearer token is installed it is sent as the Authorization header
    on top of `headers`.
    """

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        credential: CredentialCell | None = None,
    ):
        options = options or SessionOptions()
        if not options.address:
            raise ValueError("address required")
        self.address = normalize_address(options.address)
        self.headers: dict[str, str] = dict(options.headers)
        self.query: dict[str, Any] = dict(options.query)
        self.verify_ssl = options.verify_ssl
        self.timeout = options.timeout
        self.credential = credential if credential is not None else CredentialCell()
        self.events = SessionEvents()

        self._http: aiohttp.ClientSession | None = None
        self._streams: set = set()
        self._lease = None
        self._closed = False

    @classmethod
    def configure(cls, options: SessionOptions) -> "Session":
        return cls(options)

    @classmethod
    def from_address(cls, address: str) -> "Session":
        return cls(SessionOptions(address=address))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address}>"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ── Credential ────────────────────────────────────────────

    @property
    def authorization(self) -> str | None:
        """Authorization header value for the installed token, if any"""
        return self.credential.authorization

    def set_token(self, token: str) -> None:
        """Install a bearer token, replacing any previous one"""
        self.credential.install(token)

    # ── Effective defaults ────────────────────────────────────

    def default_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        authorization = self.credential.authorization
        if authorization:
            headers["Authorization"] = authorization
        return headers

    def default_query(self) -> dict[str, Any]:
        return dict(self.query)

    def url_for(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.address}{path}"

    # ── Transport ─────────────────────────────────────────────

    @property
    def ssl(self) -> bool | None:
        """Value for aiohttp's ssl= argument"""
        return None if self.verify_ssl else False

    async def ensure_http(self) -> aiohttp.ClientSession:
        """Ensure the HTTP session exists"""
        if self._http is None or self._http.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._http = aiohttp.ClientSession(timeout=timeout)
        return self._http

    # ── Delegation ────────────────────────────────────────────

    def scope_to(self, key: str, value: Any) -> "Session":
        """
        Derive a session that routes every call through an extra query key.

        Headers and query are copied by value; the credential cell is shared,
        so token refreshes on this session apply to the child as well.
        """
        options = SessionOptions(
            address=self.address,
            headers=dict(self.headers),
            query={**self.query, key: value},
            verify_ssl=self.verify_ssl,
            timeout=self.timeout,
        )
        logger.debug("Scoped session %s to %s=%s", self.address, key, value)
        return self._derive(options)

    def _derive(self, options: SessionOptions) -> "Session":
        return Session(options, credential=self.credential)

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    def attach_lease(self, lease) -> None:
        """Register the credential lease that keeps this session authenticated"""
        if self._lease is not None and self._lease is not lease:
            self._lease.stop()
        self._lease = lease

    def track_stream(self, handle) -> None:
        self._streams.add(handle)

    def untrack_stream(self, handle) -> None:
        self._streams.discard(handle)

    async def close(self) -> None:
        """Stop credential refresh, close open streams and the HTTP session"""
        self._closed = True
        if self._lease is not None:
            self._lease.stop()
            self._lease = None

        for handle in list(self._streams):
            await handle.close()
        self._streams.clear()

        if self._http and not self._http.closed:
            await self._http.close()
        self._http = None
        self.events.clear()
