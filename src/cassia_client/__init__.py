from importlib.metadata import PackageNotFoundError, version

from .ac import AccessController
from .auth import CredentialLease, CredentialRefresher
from .config_loader import Config, SessionOptions
from .errors import (
    AuthenticationError,
    CassiaError,
    FirmwareNotFoundError,
    RequestError,
    StreamClosedError,
    StreamDecodeError,
)
from .events import EventChannel, SessionEvents
from .executor import RequestExecutor, RequestSpec
from .gateway import Gateway
from .session import CredentialCell, Session, normalize_address
from .streams import EventStreamBroker, StreamHandle, StreamSpec, StreamState


def _get_version() -> str:
    """Version from package metadata, a placeholder when running from a checkout."""
    try:
        return version("cassia-client")
    except PackageNotFoundError:
        return "0.0.0+unknown"


__version__ = _get_version()

__all__ = [
    "AccessController",
    "AuthenticationError",
    "CassiaError",
    "Config",
    "CredentialCell",
    "CredentialLease",
    "CredentialRefresher",
    "EventChannel",
    "EventStreamBroker",
    "FirmwareNotFoundError",
    "Gateway",
    "RequestError",
    "RequestExecutor",
    "RequestSpec",
    "Session",
    "SessionEvents",
    "SessionOptions",
    "StreamClosedError",
    "StreamDecodeError",
    "StreamHandle",
    "StreamSpec",
    "StreamState",
    "normalize_address",
]
