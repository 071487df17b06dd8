from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .auth_context import AuthState
from .database import get_db_session
from .guard import GuardDecision, evaluate_access
from .models import AppRole, User
from .providers import Identity
from .security import AuthError
from .services import get_role, resolve_token


def _parse_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth scheme")
    return parts[1].strip()


def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
) -> User:
    token = _parse_token(authorization)
    try:
        return resolve_token(db, token)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message) from exc


def get_auth_state(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> AuthState:
    return AuthState(
        identity=Identity(id=current_user.id, email=current_user.email),
        role=get_role(db, current_user.id),
        is_loading=False,
    )


def require_access(required_role: AppRole | None = None) -> Callable:
    """Same decision as the dashboard guard, answered with HTTP codes."""

    def dependency(
        current_user: User = Depends(get_current_user),
        state: AuthState = Depends(get_auth_state),
    ) -> User:
        outcome = evaluate_access(state, required_role)
        if outcome.decision is GuardDecision.REDIRECT_LOGIN:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
        if outcome.decision is GuardDecision.PENDING:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access pending")
        if not outcome.allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=outcome.message)
        return current_user

    return dependency
