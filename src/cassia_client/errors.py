"""
Exception types raised or emitted by cassia-client.

Transport failures (aiohttp.ClientError, asyncio.TimeoutError, the
ConnectionError raised by the SSE client) are never wrapped; they reach the
caller unmodified. Everything defined here derives from CassiaError.
"""


class CassiaError(Exception):
    """Base class for all cassia-client errors"""


class RequestError(CassiaError):
    """HTTP call answered with a status other than 200"""

    def __init__(self, status: int, body: str):
        super().__init__(f"{status} {body}")
        self.status = status
        self.body = body


class AuthenticationError(CassiaError):
    """Token endpoint answered but did not hand out a bearer token"""


class FirmwareNotFoundError(CassiaError):
    """Requested firmware version is not published on the AC"""

    def __init__(self, kind: str, version: str):
        super().__init__(f"{kind} firmware version {version} not found")
        self.kind = kind
        self.version = version


class StreamDecodeError(CassiaError):
    """A stream frame carried a payload that is not valid JSON"""

    def __init__(self, payload: str, cause: Exception):
        super().__init__(f"cannot decode stream payload {payload[:80]!r}: {cause}")
        self.payload = payload
        self.cause = cause


class StreamClosedError(CassiaError):
    """The transport dropped an open event stream"""

    def __init__(self, url: str):
        super().__init__(f"event stream closed by remote: {url}")
        self.url = url
