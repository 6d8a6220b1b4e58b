"""
Request executor - one HTTP call per RequestSpec.

Session defaults are merged with the call's own headers and query before
the first suspension point, so a concurrent token refresh never produces a
half-updated request. A single attempt is made; status 200 resolves with the
body, anything else raises RequestError, transport errors propagate as-is.
"""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import aiohttp

from .errors import RequestError
from .logging_setup import get_logger
from .session import Session

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class RequestSpec:
    """Description of one REST call relative to the session address"""

    path: str
    method: str = "GET"
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    basic_auth: tuple[str, str] | None = None
    parse_json: bool = True


def merge_defaults(defaults: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict:
    """Overlay call-site values on session defaults, call-site wins"""
    merged = dict(defaults)
    if overrides:
        merged.update(overrides)
    return merged


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_query(query: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Flatten a query mapping into aiohttp params.

    None values are dropped, lists become repeated keys.
    """
    params: list[tuple[str, str]] = []
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            params.extend((key, _query_value(v)) for v in value)
        else:
            params.append((key, _query_value(value)))
    return params


def decode_body(payload: str | bytes, parse_json: bool = True) -> Any:
    """JSON-decode a response body when possible, otherwise return the text.

    Bytes that are not UTF-8 are returned unchanged.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return payload
    text = payload
    if not parse_json or not text:
        return text
    try:
        return json.loads(text)
    except ValueError:
        return text


class RequestExecutor:
    """Issues REST calls against a Session"""

    def __init__(self, session: Session):
        self.session = session

    def _prepare(self, spec: RequestSpec) -> dict[str, Any]:
        """Snapshot everything the request needs from the session (no awaits here)"""
        headers = merge_defaults(self.session.default_headers(), spec.headers)
        query = merge_defaults(self.session.default_query(), spec.query)
        kwargs: dict[str, Any] = {
            "headers": headers,
            "params": encode_query(query),
            "ssl": self.session.ssl,
            "allow_redirects": True,
        }
        if spec.body is not None:
            if isinstance(spec.body, (str, bytes)):
                kwargs["data"] = spec.body
            else:
                kwargs["json"] = spec.body
        if spec.basic_auth is not None:
            # Basic credentials replace the bearer header for this call
            user, password = spec.basic_auth
            headers["Authorization"] = aiohttp.BasicAuth(user, password).encode()
        return kwargs

    async def execute(self, spec: RequestSpec) -> Any:
        """Perform the call, returning the decoded body of a 200 response"""
        method = spec.method.upper()
        url = self.session.url_for(spec.path)
        kwargs = self._prepare(spec)
        logger.debug("send request %s %s params=%s", method, url, kwargs["params"])

        http = await self.session.ensure_http()
        async with http.request(method, url, **kwargs) as response:
            payload = await response.read()
            if response.status != 200:
                logger.debug("request %s %s failed: %d", method, url, response.status)
                raise RequestError(response.status, payload.decode("utf-8", errors="replace"))
            return decode_body(payload, spec.parse_json)

    async def execute_to_file(self, spec: RequestSpec, destination: str | Path) -> Path:
        """Stream the body of a 200 response into destination"""
        method = spec.method.upper()
        url = self.session.url_for(spec.path)
        kwargs = self._prepare(spec)
        destination = Path(destination)
        logger.debug("download %s %s -> %s", method, url, destination)

        http = await self.session.ensure_http()
        async with http.request(method, url, **kwargs) as response:
            if response.status != 200:
                payload = await response.read()
                raise RequestError(response.status, payload.decode("utf-8", errors="replace"))
            written = 0
            f = await asyncio.to_thread(open, destination, "wb")
            try:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    await asyncio.to_thread(f.write, chunk)
                    written += len(chunk)
                await asyncio.to_thread(f.flush)
            finally:
                await asyncio.to_thread(f.close)

        logger.info("Saved %d bytes to %s", written, destination)
        return destination
