from .database import Base, engine
from .routes import router


def init_school_admin_module() -> None:
    # No default accounts: the first master admin comes from the setup flow.
    Base.metadata.create_all(bind=engine)


__all__ = ["router", "init_school_admin_module"]
