"""
OAuth2 client-credentials authentication with background refresh.

authenticate() trades a developer key/secret for a bearer token, installs it
into the session's credential cell and, when asked to, keeps it fresh by
re-authenticating REFRESH_MARGIN seconds before it expires. The refresh loop
is owned by the returned CredentialLease; stop() cancels it.
"""

import asyncio
import time
from dataclasses import dataclass, field

from .errors import AuthenticationError
from .executor import RequestExecutor, RequestSpec
from .logging_setup import get_logger
from .session import Session

logger = get_logger(__name__)

TOKEN_PATH = "/oauth2/token"
REFRESH_MARGIN = 10  # seconds before expiry


def refresh_delay(expires_in: float) -> float:
    """Seconds to wait before refreshing; a token that expires within the
    margin is refreshed as soon as possible"""
    return max(expires_in - REFRESH_MARGIN, 0)


@dataclass
class CredentialLease:
    """An authenticated credential and the timer that keeps it fresh"""

    developer_id: str
    secret: str = field(repr=False)
    token: str = field(default="", repr=False)
    expires_in: float | None = None
    refreshed_at: float = 0.0
    refresh_count: int = 0
    auto_refresh: bool = True
    _task: asyncio.Task | None = field(default=None, repr=False)
    _stopped: bool = field(default=False, repr=False)

    @property
    def active(self) -> bool:
        """True while a refresh is scheduled"""
        return self._task is not None and not self._task.done()

    @property
    def next_refresh_in(self) -> float | None:
        """Seconds until the scheduled refresh, None when nothing is scheduled"""
        if not self.active:
            return None
        elapsed = time.monotonic() - self.refreshed_at
        return max(refresh_delay(self.expires_in) - elapsed, 0)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Cancel the scheduled refresh; the installed token stays in place"""
        self._stopped = True
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class CredentialRefresher:
    """Authenticates a Session and keeps its bearer token fresh"""

    def __init__(self, session: Session):
        self.session = session
        self.executor = RequestExecutor(session)
        self.lease: CredentialLease | None = None

    async def authenticate(
        self, developer: str, secret: str, auto_refresh: bool = True
    ) -> CredentialLease:
        """
        Exchange developer credentials for a bearer token.

        Args:
            developer: Developer key from the AC settings page
            secret: Developer secret
            auto_refresh: Re-authenticate shortly before the token expires

        Returns:
            The lease holding the token and its refresh timer

        Raises:
            RequestError: Token endpoint rejected the credentials
            AuthenticationError: Response did not contain a token
        """
        lease = CredentialLease(developer_id=developer, secret=secret, auto_refresh=auto_refresh)
        await self._exchange(lease)

        if self.lease is not None and self.lease is not lease:
            self.lease.stop()
        self.lease = lease
        self.session.attach_lease(lease)

        if auto_refresh:
            self._schedule(lease)
        return lease

    async def _exchange(self, lease: CredentialLease) -> None:
        """Fetch a token for lease and install it into the session"""
        authinfo = await self.executor.execute(RequestSpec(
            path=TOKEN_PATH,
            method="POST",
            basic_auth=(lease.developer_id, lease.secret),
            body={"grant_type": "client_credentials"},
        ))
        if not isinstance(authinfo, dict) or not authinfo.get("access_token"):
            raise AuthenticationError("token response without access_token")

        lease.token = authinfo["access_token"]
        expires_in = authinfo.get("expires_in")
        lease.expires_in = float(expires_in) if expires_in is not None else None
        lease.refreshed_at = time.monotonic()
        self.session.set_token(lease.token)
        logger.info(
            "Bearer token installed for %s (expires in %ss)",
            lease.developer_id, lease.expires_in
        )

    def _schedule(self, lease: CredentialLease) -> None:
        if lease.expires_in is None:
            logger.warning("Token for %s has no expiry, not refreshing", lease.developer_id)
            return
        delay = refresh_delay(lease.expires_in)
        logger.debug("Token refresh scheduled in %.1fs", delay)
        lease._task = asyncio.create_task(self._refresh_after(lease, delay))

    async def _refresh_after(self, lease: CredentialLease, delay: float) -> None:
        await asyncio.sleep(delay)
        if lease.stopped:
            return
        try:
            await self._exchange(lease)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # No retry: the lease ends and the session is told about it
            logger.error("Token refresh for %s failed: %s", lease.developer_id, e)
            lease._task = None
            lease._stopped = True
            self.session.events.error.emit(e)
            return

        lease.refresh_count += 1
        if not lease.stopped:
            self._schedule(lease)
