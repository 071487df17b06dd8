"""Boundary between the session core and the hosted backend.

The auth context, timeout monitor and bootstrap flow only talk to the
protocols below. The ``Database*`` implementations back them with the
service layer; each ``DatabaseSessionProvider`` behaves like one browser's
auth client, holding at most one current session.
"""
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.orm import Session as DbSession, sessionmaker
from starlette.concurrency import run_in_threadpool

from . import services
from .models import AppRole, User
from .security import AuthError

logger = logging.getLogger(__name__)


class SessionEvent(str, enum.Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


@dataclass(frozen=True)
class Identity:
    id: str
    email: str


@dataclass(frozen=True)
class Session:
    identity: Identity
    access_token: str
    issued_at: datetime


@dataclass(frozen=True)
class AuthResult:
    error: AuthError | None = None
    session: Session | None = None
    identity: Identity | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: AuthError) -> "AuthResult":
        return cls(error=error)


SessionListener = Callable[[SessionEvent, Session | None], None]


class SessionProvider(Protocol):
    async def sign_in(self, email: str, password: str) -> AuthResult: ...

    async def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> AuthResult: ...

    async def sign_out(self) -> None: ...

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]: ...

    async def get_current_session(self) -> Session | None: ...

    async def resend_verification(self, email: str) -> AuthResult: ...

    async def refresh_session(self) -> AuthResult: ...


class RoleStore(Protocol):
    async def get_role(self, user_id: str) -> AppRole | None: ...

    async def set_role(self, actor_id: str, user_id: str, role: AppRole) -> AuthResult: ...

    async def remove_role(self, actor_id: str, user_id: str) -> AuthResult: ...

    async def is_system_initialized(self) -> bool: ...

    async def initialize_system(self, email: str, password: str, full_name: str) -> AuthResult: ...


class ProfileStore(Protocol):
    async def create_profile(self, user_id: str, full_name: str, email: str) -> None: ...


class _DatabaseBacked:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _call(self, fn: Callable[[DbSession], Any]) -> Any:
        def work():
            db = self._session_factory()
            try:
                return fn(db)
            finally:
                db.close()

        return await run_in_threadpool(work)


class DatabaseSessionProvider(_DatabaseBacked):
    def __init__(self, session_factory: sessionmaker):
        super().__init__(session_factory)
        self._current: Session | None = None
        self._listeners: list[SessionListener] = []

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _emit(self, event: SessionEvent, session: Session | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception(f"Session listener failed on {event.value}")

    def _open(self, db: DbSession, email: str, password: str) -> Session:
        user = services.authenticate_user(db, email=email, password=password)
        token, issued_at = services.issue_session_token(user)
        return Session(identity=Identity(id=user.id, email=user.email), access_token=token, issued_at=issued_at)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        try:
            session = await self._call(lambda db: self._open(db, email, password))
        except AuthError as exc:
            return AuthResult.failure(exc)
        self._current = session
        self._emit(SessionEvent.SIGNED_IN, session)
        return AuthResult(session=session, identity=session.identity)

    async def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> AuthResult:
        def register(db: DbSession):
            user = services.register_user(db, email=email, password=password)
            identity = Identity(id=user.id, email=user.email)
            if user.email_confirmed_at is None:
                return identity, None
            token, issued_at = services.issue_session_token(user)
            return identity, Session(identity=identity, access_token=token, issued_at=issued_at)

        try:
            identity, session = await self._call(register)
        except AuthError as exc:
            return AuthResult.failure(exc)
        if session is not None:
            self._current = session
            self._emit(SessionEvent.SIGNED_IN, session)
        return AuthResult(session=session, identity=identity)

    async def sign_out(self) -> None:
        session, self._current = self._current, None
        if session is not None:
            def revoke(db: DbSession) -> None:
                user = services.resolve_token(db, session.access_token)
                services.revoke_sessions(db, user=user)

            try:
                await self._call(revoke)
            except AuthError as exc:
                logger.warning(f"Server-side sign-out skipped: {exc.message}")
        self._emit(SessionEvent.SIGNED_OUT, None)

    async def get_current_session(self) -> Session | None:
        return self._current

    async def resend_verification(self, email: str) -> AuthResult:
        try:
            await self._call(lambda db: services.resend_verification(db, email=email))
        except AuthError as exc:
            return AuthResult.failure(exc)
        return AuthResult()

    async def refresh_session(self) -> AuthResult:
        current = self._current
        if current is None:
            return AuthResult.failure(AuthError("No active session", code="invalid_token"))

        def reissue(db: DbSession) -> Session:
            user = services.resolve_token(db, current.access_token)
            token, issued_at = services.issue_session_token(user)
            return Session(identity=current.identity, access_token=token, issued_at=issued_at)

        try:
            session = await self._call(reissue)
        except AuthError as exc:
            return AuthResult.failure(exc)
        self._current = session
        self._emit(SessionEvent.TOKEN_REFRESHED, session)
        return AuthResult(session=session, identity=session.identity)


class DatabaseRoleStore(_DatabaseBacked):
    async def get_role(self, user_id: str) -> AppRole | None:
        return await self._call(lambda db: services.get_role(db, user_id))

    async def _as_actor(self, actor_id: str, fn: Callable[[DbSession, Any], Any]) -> AuthResult:
        def work(db: DbSession):
            actor = db.get(User, actor_id)
            if actor is None:
                raise AuthError("Unknown actor", code="forbidden", status_code=403)
            return fn(db, actor)

        try:
            await self._call(work)
        except AuthError as exc:
            return AuthResult.failure(exc)
        return AuthResult()

    async def set_role(self, actor_id: str, user_id: str, role: AppRole) -> AuthResult:
        return await self._as_actor(
            actor_id, lambda db, actor: services.assign_role(db, actor=actor, user_id=user_id, role=role)
        )

    async def remove_role(self, actor_id: str, user_id: str) -> AuthResult:
        return await self._as_actor(
            actor_id, lambda db, actor: services.remove_role(db, actor=actor, user_id=user_id)
        )

    async def is_system_initialized(self) -> bool:
        return await self._call(services.is_system_initialized)

    async def initialize_system(self, email: str, password: str, full_name: str) -> AuthResult:
        def work(db: DbSession) -> Identity:
            user = services.initialize_system(db, email=email, password=password, full_name=full_name)
            return Identity(id=user.id, email=user.email)

        try:
            identity = await self._call(work)
        except AuthError as exc:
            return AuthResult.failure(exc)
        return AuthResult(identity=identity)


class DatabaseProfileStore(_DatabaseBacked):
    async def create_profile(self, user_id: str, full_name: str, email: str) -> None:
        await self._call(lambda db: services.create_profile(db, user_id=user_id, full_name=full_name, email=email))
