"""Session management for authenticated users."""

import asyncio
import hashlib
import logging
import secrets
import time
import weakref
from abc import ABC, abstractmethod
from typing import Callable

from jose import JOSEError, JWTError, jwe, jwt
from jose.constants import ALGORITHMS

from idempiere_portal.config import Settings
from idempiere_portal.auth.models import ErpSession, LoginFlowState, SessionUpdate

logger = logging.getLogger(__name__)

COOKIE_ALGORITHM = "HS256"


class SessionStore(ABC):
    """Abstract base class for session storage.

    Implementations hand out copies: mutating a returned object never
    changes what is stored.
    """

    @abstractmethod
    async def save_session(self, session_id: str, session: ErpSession, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> ErpSession | None:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def save_login_flow(self, flow: LoginFlowState, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def get_login_flow(self, flow_id: str) -> LoginFlowState | None:
        pass

    @abstractmethod
    async def delete_login_flow(self, flow_id: str) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """In-memory session store for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._sessions: dict[str, tuple[str, float]] = {}
        self._flows: dict[str, tuple[str, float]] = {}
        self._clock = clock

    def _read(self, table: dict[str, tuple[str, float]], key: str) -> str | None:
        if key not in table:
            return None
        data, expires_at = table[key]
        if self._clock() > expires_at:
            del table[key]
            return None
        return data

    async def save_session(self, session_id: str, session: ErpSession, ttl_seconds: int) -> None:
        self._sessions[session_id] = (session.model_dump_json(), self._clock() + ttl_seconds)

    async def get_session(self, session_id: str) -> ErpSession | None:
        data = self._read(self._sessions, session_id)
        return ErpSession.model_validate_json(data) if data else None

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def save_login_flow(self, flow: LoginFlowState, ttl_seconds: int) -> None:
        self._flows[flow.flow_id] = (flow.model_dump_json(), self._clock() + ttl_seconds)

    async def get_login_flow(self, flow_id: str) -> LoginFlowState | None:
        data = self._read(self._flows, flow_id)
        return LoginFlowState.model_validate_json(data) if data else None

    async def delete_login_flow(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)


class RedisSessionStore(SessionStore):
    """Redis-backed session store for production."""

    def __init__(self, redis_url: str):
        import redis.asyncio as redis
        self._redis = redis.from_url(redis_url, decode_responses=True)
        self._session_prefix = "idempiere:session:"
        self._flow_prefix = "idempiere:login_flow:"

    async def save_session(self, session_id: str, session: ErpSession, ttl_seconds: int) -> None:
        key = f"{self._session_prefix}{session_id}"
        await self._redis.setex(key, ttl_seconds, session.model_dump_json())

    async def get_session(self, session_id: str) -> ErpSession | None:
        key = f"{self._session_prefix}{session_id}"
        data = await self._redis.get(key)
        if not data:
            return None
        return ErpSession.model_validate_json(data)

    async def delete_session(self, session_id: str) -> None:
        key = f"{self._session_prefix}{session_id}"
        await self._redis.delete(key)

    async def save_login_flow(self, flow: LoginFlowState, ttl_seconds: int) -> None:
        key = f"{self._flow_prefix}{flow.flow_id}"
        await self._redis.setex(key, ttl_seconds, flow.model_dump_json())

    async def get_login_flow(self, flow_id: str) -> LoginFlowState | None:
        key = f"{self._flow_prefix}{flow_id}"
        data = await self._redis.get(key)
        if not data:
            return None
        return LoginFlowState.model_validate_json(data)

    async def delete_login_flow(self, flow_id: str) -> None:
        key = f"{self._flow_prefix}{flow_id}"
        await self._redis.delete(key)


class SessionManager:
    """Owns every ERP session mutation and the signed session cookie.

    Creation, the lazy expiry rewrite on read, updates, invalidation and
    deletion all run under a per-session lock.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not settings.session_secret_key:
            raise ValueError("SESSION_SECRET_KEY is not configured")

        self.settings = settings
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._flow_key = hashlib.sha256(settings.session_secret_key.encode()).digest()

        if store is not None:
            self._store = store
        elif settings.redis_url and settings.is_production:
            self._store = RedisSessionStore(settings.redis_url)
        else:
            logger.warning("Using in-memory session store - not suitable for production")
            self._store = InMemorySessionStore(clock=clock)

    def now(self) -> int:
        return int(self._clock())

    def generate_session_id(self) -> str:
        """Generate a secure random session ID."""
        return secrets.token_urlsafe(32)

    def _lock(self, session_id: str) -> asyncio.Lock:
        # entries vanish once no caller holds the lock
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _ttl(self, session: ErpSession) -> int:
        return max(1, session.session_expires_at - self.now())

    async def _update(
        self,
        session_id: str,
        mutate: Callable[[ErpSession], ErpSession],
    ) -> ErpSession | None:
        async with self._lock(session_id):
            session = await self._store.get_session(session_id)
            if session is None:
                return None
            updated = mutate(session)
            if updated != session:
                await self._store.save_session(session_id, updated, self._ttl(updated))
            return updated

    async def create_session(self, session: ErpSession) -> str:
        """Persist a new session and return its ID."""
        session_id = self.generate_session_id()
        async with self._lock(session_id):
            await self._store.save_session(session_id, session, self._ttl(session))
        logger.info(
            f"Created session for user {session.user_name} "
            f"(client {session.client_id}, role {session.role_id}, org {session.organization_id})"
        )
        return session_id

    async def get_session(self, session_id: str) -> ErpSession | None:
        """Retrieve a session, blanking its ERP token if it has expired."""
        return await self._update(session_id, self._expire_if_needed)

    def _expire_if_needed(self, session: ErpSession) -> ErpSession:
        if session.token_expiry and self.now() >= session.token_expiry:
            logger.warning(f"iDempiere token for user {session.user_name} has expired; invalidating session")
            return session.model_copy(update={"idempiere_token": "", "token_expiry": 0})
        return session

    async def update_session(self, session_id: str, changes: SessionUpdate) -> ErpSession | None:
        """Apply user-initiated claim changes and renew the session envelope."""
        def apply(session: ErpSession) -> ErpSession:
            session = self._expire_if_needed(session)
            update: dict = {"session_expires_at": self.now() + self.settings.session_ttl_seconds}
            if changes.language:
                update["language"] = changes.language
            if changes.user_name:
                update["user_name"] = changes.user_name
            return session.model_copy(update=update)

        return await self._update(session_id, apply)

    async def invalidate_session(self, session_id: str) -> None:
        """Blank the ERP token in place without removing the session."""
        await self._update(
            session_id,
            lambda session: session.model_copy(update={"idempiere_token": "", "token_expiry": 0}),
        )

    async def delete_session(self, session_id: str) -> None:
        """Delete a session (logout). Safe to call more than once."""
        async with self._lock(session_id):
            await self._store.delete_session(session_id)
        logger.info(f"Deleted session {session_id[:8]}...")

    # ------------------------------------------------------------------
    # Signed cookie
    # ------------------------------------------------------------------

    def encode_cookie(self, session_id: str, expires_at: int) -> str:
        """Sign a session ID into a cookie value."""
        return jwt.encode(
            {"sid": session_id, "exp": expires_at},
            self.settings.session_secret_key,
            algorithm=COOKIE_ALGORITHM,
        )

    def decode_cookie(self, value: str | None) -> str | None:
        """Return the session ID from a signed cookie, or None if invalid or expired."""
        if not value:
            return None
        try:
            claims = jwt.decode(value, self.settings.session_secret_key, algorithms=[COOKIE_ALGORITHM])
        except JWTError as e:
            logger.info(f"Rejected session cookie: {e}")
            return None
        session_id = claims.get("sid")
        return session_id if isinstance(session_id, str) else None

    # ------------------------------------------------------------------
    # Login flows
    # ------------------------------------------------------------------

    async def create_login_flow(self) -> LoginFlowState:
        flow = LoginFlowState(flow_id=secrets.token_urlsafe(24), selected_context={
            "language": self.settings.default_language,
        })
        await self.save_login_flow(flow)
        return flow

    async def get_login_flow(self, flow_id: str | None) -> LoginFlowState | None:
        if not flow_id:
            return None
        flow = await self._store.get_login_flow(flow_id)
        if flow is None or not flow.temp_password:
            return flow
        try:
            password = jwe.decrypt(flow.temp_password, self._flow_key).decode()
        except JOSEError as e:
            logger.warning(f"Dropping unreadable password from login flow {flow_id[:8]}...: {e}")
            password = ""
        return flow.model_copy(update={"temp_password": password})

    async def save_login_flow(self, flow: LoginFlowState) -> None:
        """Persist a flow. The password is only ever stored encrypted."""
        if flow.temp_password:
            sealed = jwe.encrypt(
                flow.temp_password,
                self._flow_key,
                algorithm=ALGORITHMS.DIR,
                encryption=ALGORITHMS.A256GCM,
            )
            flow = flow.model_copy(update={"temp_password": sealed.decode()})
        await self._store.save_login_flow(flow, self.settings.login_flow_ttl_seconds)

    async def delete_login_flow(self, flow_id: str) -> None:
        await self._store.delete_login_flow(flow_id)
