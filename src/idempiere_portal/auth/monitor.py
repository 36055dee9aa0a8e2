"""Token expiry monitoring and forced logout."""

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Awaitable, Callable, Protocol

import httpx
from pydantic import BaseModel

from idempiere_portal.config import Settings
from idempiere_portal.auth.middleware import SESSION_COOKIE

logger = logging.getLogger(__name__)

SESSION_STATUS_PATH = "/auth/session/status"
LOGOUT_PATH = "/auth/logout"


class MonitorEvent(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    LOGOUT = "logout"
    SESSION_ENDED = "session_ended"


class MonitoredSession(BaseModel):
    """The two expiries a monitor watches."""

    token_expiry: int
    session_expires_at: int | None = None


class LogoutHandler(Protocol):
    """Side effects of a forced logout, in the order they are invoked."""

    async def notify(self, event: MonitorEvent, seconds_left: int) -> None:
        ...

    async def clear_client_state(self) -> None:
        ...

    async def invalidate_session(self) -> None:
        ...

    async def navigate(self, url: str, replace: bool = True) -> None:
        ...


SessionSource = Callable[[], Awaitable[MonitoredSession | None]]


class TokenMonitor:
    """Polls a session's expiry, warns once per threshold and logs out once.

    The shorter of the ERP token lifetime and the portal session envelope
    decides. Warning and critical notices fire at most once per session;
    flags reset when a new session appears after none was seen.
    """

    def __init__(
        self,
        session_source: SessionSource,
        handler: LogoutHandler,
        login_url: str = "/auth/login",
        warning_threshold: int = 300,
        critical_threshold: int = 60,
        interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        if critical_threshold >= warning_threshold:
            raise ValueError("critical_threshold must be lower than warning_threshold")
        self.session_source = session_source
        self.handler = handler
        self.login_url = login_url
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._had_session = False
        self._reset_flags()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_source: SessionSource,
        handler: LogoutHandler,
    ) -> "TokenMonitor":
        return cls(
            session_source,
            handler,
            login_url=settings.login_url,
            warning_threshold=settings.token_warning_seconds,
            critical_threshold=settings.token_critical_seconds,
            interval_seconds=settings.token_monitor_interval_seconds,
        )

    def _reset_flags(self) -> None:
        self.warning_shown = False
        self.critical_shown = False
        self.logout_initiated = False

    @staticmethod
    def effective_time_left(session: MonitoredSession, now: int) -> float:
        token_left = session.token_expiry - now
        envelope_left = math.inf if session.session_expires_at is None else session.session_expires_at - now
        return min(token_left, envelope_left)

    async def check(self) -> MonitorEvent | None:
        """Run one expiry check and return what it triggered, if anything."""
        session = await self.session_source()
        if session is None:
            ended = self._had_session
            self._had_session = False
            self._reset_flags()
            return MonitorEvent.SESSION_ENDED if ended else None

        if not self._had_session:
            self._had_session = True
            self._reset_flags()

        # the torn-down session may still answer until invalidation lands
        if self.logout_initiated:
            return None

        left = self.effective_time_left(session, int(self._clock()))

        if left <= 0:
            logger.warning("Session or iDempiere token expired; forcing logout")
            await self.force_logout()
            return MonitorEvent.LOGOUT

        if left <= self.critical_threshold:
            if not self.critical_shown:
                self.critical_shown = True
                logger.warning(f"Session expires in {int(left)}s")
                await self.handler.notify(MonitorEvent.CRITICAL, int(left))
                return MonitorEvent.CRITICAL
        elif left <= self.warning_threshold and not self.warning_shown:
            self.warning_shown = True
            logger.info(f"Session expires in {int(left)}s")
            await self.handler.notify(MonitorEvent.WARNING, int(left))
            return MonitorEvent.WARNING

        return None

    async def force_logout(self) -> bool:
        """Tear the session down. Only the first call does anything."""
        if self.logout_initiated:
            return False
        self.logout_initiated = True

        await self.handler.notify(MonitorEvent.LOGOUT, 0)
        await self.handler.clear_client_state()
        try:
            await self.handler.invalidate_session()
        except Exception as e:
            logger.error(f"Server-side session invalidation failed: {e}")
        await self.handler.navigate(self.login_url, replace=True)
        return True

    async def _run(self) -> None:
        while True:
            try:
                event = await self.check()
            except httpx.TransportError as e:
                logger.warning(f"Session status check failed: {e!r}")
                event = None
            except (ValueError, KeyError) as e:
                logger.error(f"Unreadable session status: {e!r}")
                event = None
            if event in (MonitorEvent.LOGOUT, MonitorEvent.SESSION_ENDED):
                return
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


async def fetch_monitored_session(client: httpx.AsyncClient) -> MonitoredSession | None:
    """Read the session expiries from the portal's status endpoint."""
    resp = await client.get(SESSION_STATUS_PATH, follow_redirects=False)
    if resp.status_code != 200:
        return None
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {SESSION_STATUS_PATH}")
    return MonitoredSession(
        token_expiry=data["token_expiry"],
        session_expires_at=data.get("session_expires_at"),
    )


class PortalLogoutHandler:
    """LogoutHandler for a Python client of the portal's HTTP API."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.notifications: list[tuple[MonitorEvent, int]] = []
        self.navigated_to: str | None = None
        self.replaced_history = False
        self._session_cookie: str | None = None

    async def notify(self, event: MonitorEvent, seconds_left: int) -> None:
        self.notifications.append((event, seconds_left))
        if event == MonitorEvent.LOGOUT:
            logger.warning("Your session has ended. Redirecting to the login page.")
        else:
            logger.warning(f"Your session will end in {seconds_left} seconds")

    async def clear_client_state(self) -> None:
        self._session_cookie = self.client.cookies.get(SESSION_COOKIE)
        self.client.cookies.clear()

    async def invalidate_session(self) -> None:
        headers = {"Cookie": f"{SESSION_COOKIE}={self._session_cookie}"} if self._session_cookie else {}
        resp = await self.client.post(LOGOUT_PATH, headers=headers, follow_redirects=False)
        self._session_cookie = None
        logger.info(f"Portal logout returned {resp.status_code}")

    async def navigate(self, url: str, replace: bool = True) -> None:
        self.navigated_to = url
        self.replaced_history = replace
