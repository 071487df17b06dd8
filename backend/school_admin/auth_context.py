import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .activity import ActivityTracker, Clock, SessionTimeoutMonitor, utcnow
from .models import AppRole
from .providers import (
    AuthResult,
    Identity,
    ProfileStore,
    RoleStore,
    Session,
    SessionEvent,
    SessionProvider,
)
from .security import AuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthState:
    identity: Identity | None = None
    role: AppRole | None = None
    is_loading: bool = True

    @property
    def is_master_admin(self) -> bool:
        return self.role == AppRole.MASTER_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role == AppRole.STAFF


class AuthContext:
    """Who is signed in and what they may do.

    Identity and role change only through this object. Every identity change
    bumps a generation counter; a role lookup that finishes after a newer
    change is dropped, so the last session event wins regardless of which
    lookup completes first. Until the lookup for the current identity is
    back, ``is_loading`` stays true so the guard never mistakes "not known
    yet" for "no role".
    """

    def __init__(
        self,
        session_provider: SessionProvider,
        role_store: RoleStore,
        profile_store: ProfileStore | None = None,
        *,
        clock: Clock = utcnow,
        on_notice: Callable[[str], None] | None = None,
    ):
        self._provider = session_provider
        self._role_store = role_store
        self._profile_store = profile_store
        self._session: Session | None = None
        self._identity: Identity | None = None
        self._role: AppRole | None = None
        self._initializing = True
        self._role_pending = False
        self._generation = 0
        self._role_task: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self.activity = ActivityTracker(clock)
        self.monitor = SessionTimeoutMonitor(self.activity, self.sign_out, on_notice=on_notice, clock=clock)

    # -- state -------------------------------------------------------------

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def role(self) -> AppRole | None:
        return self._role

    @property
    def is_loading(self) -> bool:
        return self._initializing or self._role_pending

    @property
    def is_master_admin(self) -> bool:
        return self._role == AppRole.MASTER_ADMIN

    @property
    def is_staff(self) -> bool:
        return self._role == AppRole.STAFF

    @property
    def last_activity(self):
        return self.activity.last_activity

    def snapshot(self) -> AuthState:
        return AuthState(identity=self._identity, role=self._role, is_loading=self.is_loading)

    # -- lifecycle ---------------------------------------------------------

    async def init(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._provider.on_session_change(self._handle_session_change)
        generation = self._generation
        try:
            session = await self._provider.get_current_session()
        except Exception:
            logger.exception("Could not restore the current session")
            session = None
        # A session event that arrived while restoring is newer than the snapshot.
        if generation == self._generation:
            self._apply_session(session)
        else:
            logger.debug("Session changed while restoring; keeping the newer state")
        self._initializing = False

    async def teardown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.monitor.stop()
        self.monitor.close()
        task, self._role_task = self._role_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_until_ready(self) -> AuthState:
        while self._role_task is not None and not self._role_task.done():
            await asyncio.wait({self._role_task})
        return self.snapshot()

    # -- session events ----------------------------------------------------

    def _handle_session_change(self, event: SessionEvent, session: Session | None) -> None:
        if event is SessionEvent.SIGNED_OUT or session is None:
            self._apply_session(None)
            return
        if (
            event is SessionEvent.TOKEN_REFRESHED
            and self._identity is not None
            and session.identity.id == self._identity.id
        ):
            self._session = session
            return
        self._apply_session(session)

    def _apply_session(self, session: Session | None) -> None:
        self._session = session
        self._identity = session.identity if session else None
        self._role = None
        self._generation += 1

        if self._identity is None:
            self._role_pending = False
            self.monitor.cancel()
            return

        self.activity.touch()
        self.monitor.start()
        self._schedule_role_lookup()

    def _schedule_role_lookup(self) -> None:
        self._role_pending = True
        self._role_task = asyncio.create_task(self._resolve_role(self._generation, self._identity.id))

    async def _resolve_role(self, generation: int, user_id: str) -> None:
        try:
            role = await self._role_store.get_role(user_id)
        except Exception as exc:
            logger.error(f"Error fetching role for {user_id}: {exc}")
            role = None

        if generation != self._generation:
            logger.debug(f"Discarding stale role lookup for {user_id}")
            return
        self._role = role
        self._role_pending = False

    async def refresh_role(self) -> AuthState:
        if self._identity is not None:
            self._generation += 1
            self._schedule_role_lookup()
        return await self.wait_until_ready()

    # -- operations --------------------------------------------------------

    def update_activity(self, kind: str | None = None) -> None:
        if kind is None:
            self.activity.touch()
        else:
            self.activity.record(kind)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        try:
            result = await self._provider.sign_in(email, password)
        except Exception as exc:
            logger.exception("Sign-in failed unexpectedly")
            return AuthResult.failure(AuthError(str(exc), code="unexpected", status_code=500))
        if result.ok:
            self.update_activity()
        return result

    async def sign_up(self, email: str, password: str, full_name: str) -> AuthResult:
        # No role is requested here: new accounts stay pending until a
        # master admin assigns one.
        try:
            result = await self._provider.sign_up(email, password, {"full_name": full_name})
        except Exception as exc:
            logger.exception("Sign-up failed unexpectedly")
            return AuthResult.failure(AuthError(str(exc), code="unexpected", status_code=500))
        if not result.ok or result.identity is None:
            return result

        if self._profile_store is not None:
            try:
                await self._profile_store.create_profile(result.identity.id, full_name, email)
            except Exception as exc:
                logger.error(f"Error creating profile for {email}: {exc}")
        return result

    async def sign_out(self) -> None:
        try:
            await self._provider.sign_out()
        except Exception:
            logger.exception("Sign-out failed at the provider, clearing local state anyway")
        self._apply_session(None)
        await self.monitor.stop()

    async def resend_verification(self, email: str) -> AuthResult:
        return await self._provider.resend_verification(email)
