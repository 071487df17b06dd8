import enum
from dataclasses import dataclass
from urllib.parse import quote

from .auth_context import AuthContext, AuthState
from .models import AppRole

LOGIN_PATH = "/auth"

# master_admin is a superset of staff.
ROLE_ACCESS = {
    AppRole.MASTER_ADMIN: {AppRole.MASTER_ADMIN, AppRole.STAFF},
    AppRole.STAFF: {AppRole.STAFF},
}


class GuardDecision(str, enum.Enum):
    LOADING = "loading"
    REDIRECT_LOGIN = "redirect_login"
    PENDING = "pending"
    DENIED = "denied"
    ALLOW = "allow"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class RouteRule:
    path: str
    title: str
    require_role: AppRole | None = None


@dataclass(frozen=True)
class GuardOutcome:
    decision: GuardDecision
    redirect_to: str | None = None
    message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision is GuardDecision.ALLOW


DASHBOARD_ROUTES = (
    RouteRule("/", "Dashboard"),
    RouteRule("/students", "Students"),
    RouteRule("/fees", "Fees"),
    RouteRule("/attendance", "Attendance"),
    RouteRule("/academics", "Academics"),
    RouteRule("/reports", "Reports"),
    RouteRule("/classes", "Class Management", AppRole.MASTER_ADMIN),
    RouteRule("/staff", "Staff Management", AppRole.MASTER_ADMIN),
    RouteRule("/audit", "Audit Logs", AppRole.MASTER_ADMIN),
)

PENDING_MESSAGE = (
    "Your account has been created but is awaiting role assignment by the Master Admin. "
    "Please contact your administrator to be granted access."
)


def role_satisfies(role: AppRole | None, required: AppRole | None) -> bool:
    if role is None:
        return False
    if required is None:
        return True
    return required in ROLE_ACCESS.get(role, {role})


def login_redirect(requested_path: str) -> str:
    return f"{LOGIN_PATH}?from={quote(requested_path, safe='')}"


def evaluate_access(state: AuthState, require_role: AppRole | None = None, requested_path: str = "/") -> GuardOutcome:
    """Decide what to show for a protected screen. Pure; no I/O."""
    if state.is_loading:
        return GuardOutcome(GuardDecision.LOADING)
    if state.identity is None:
        return GuardOutcome(GuardDecision.REDIRECT_LOGIN, redirect_to=login_redirect(requested_path))
    if state.role is None:
        return GuardOutcome(GuardDecision.PENDING, message=PENDING_MESSAGE)
    if not role_satisfies(state.role, require_role):
        if require_role is AppRole.MASTER_ADMIN:
            message = "This section requires Master Admin privileges."
        else:
            message = "You don't have permission to access this section."
        return GuardOutcome(GuardDecision.DENIED, message=message)
    return GuardOutcome(GuardDecision.ALLOW)


class RouteGuard:
    def __init__(self, context: AuthContext, routes: tuple[RouteRule, ...] = DASHBOARD_ROUTES):
        self._context = context
        self._routes = {rule.path: rule for rule in routes}

    def rule_for(self, path: str) -> RouteRule | None:
        return self._routes.get(path.split("?", 1)[0].rstrip("/") or "/")

    def check(self, path: str) -> GuardOutcome:
        rule = self.rule_for(path)
        if rule is None:
            return GuardOutcome(GuardDecision.NOT_FOUND)
        return evaluate_access(self._context.snapshot(), rule.require_role, path)

    def visible_routes(self) -> list[RouteRule]:
        """Navigation entries the current user may open."""
        state = self._context.snapshot()
        return [rule for rule in self._routes.values() if evaluate_access(state, rule.require_role).allowed]
