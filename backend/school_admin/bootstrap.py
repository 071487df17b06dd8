import enum
import logging

from .auth_context import AuthContext
from .providers import AuthResult, RoleStore
from .security import AuthError

logger = logging.getLogger(__name__)

CREATE_MASTER_ADMIN_FORM = "create_master_admin"
SIGN_IN_FORM = "sign_in"


class BootstrapState(str, enum.Enum):
    UNKNOWN = "unknown"
    FIRST_RUN = "first_run"
    NORMAL = "normal"
    SETUP_COMPLETE = "setup_complete"


class BootstrapFlow:
    """First-run setup of an empty system.

    The initialization check is callable without signing in. When it
    fails the flow assumes the system is already set up and only offers
    sign-in; the create-admin form is shown only on a definite "no".
    The one-time guarantee itself lives in the backend.
    """

    def __init__(self, role_store: RoleStore, context: AuthContext | None = None):
        self._role_store = role_store
        self._context = context
        self.state = BootstrapState.UNKNOWN

    @property
    def available_forms(self) -> frozenset[str]:
        if self.state is BootstrapState.FIRST_RUN:
            return frozenset({CREATE_MASTER_ADMIN_FORM})
        if self.state in (BootstrapState.NORMAL, BootstrapState.SETUP_COMPLETE):
            return frozenset({SIGN_IN_FORM})
        return frozenset()

    async def load(self) -> BootstrapState:
        try:
            initialized = await self._role_store.is_system_initialized()
        except Exception as exc:
            logger.error(f"Initialization check failed, assuming initialized: {exc}")
            initialized = True
        self.state = BootstrapState.NORMAL if initialized else BootstrapState.FIRST_RUN
        return self.state

    async def create_master_admin(self, email: str, password: str, full_name: str) -> AuthResult:
        if self.state is not BootstrapState.FIRST_RUN:
            return AuthResult.failure(
                AuthError("System is already initialized", code="already_initialized", status_code=409)
            )

        try:
            result = await self._role_store.initialize_system(email, password, full_name)
        except Exception as exc:
            logger.exception("System initialization failed")
            return AuthResult.failure(AuthError(str(exc), code="unexpected", status_code=500))

        if not result.ok:
            if result.error.code == "already_initialized":
                self.state = BootstrapState.NORMAL
            return result

        self.state = BootstrapState.SETUP_COMPLETE
        logger.info(f"Master admin {email} created")
        if self._context is not None:
            signed_in = await self._context.sign_in(email, password)
            if not signed_in.ok:
                return signed_in
            return AuthResult(session=signed_in.session, identity=result.identity)
        return result

    def acknowledge(self) -> BootstrapState:
        if self.state is BootstrapState.SETUP_COMPLETE:
            self.state = BootstrapState.NORMAL
        return self.state
