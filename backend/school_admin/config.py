import os
from dataclasses import dataclass, field


def _csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    jwt_secret: str = os.getenv("SCHOOL_ADMIN_JWT_SECRET", os.getenv("JWT_SECRET", "change-me-in-production"))
    jwt_algorithm: str = os.getenv("SCHOOL_ADMIN_JWT_ALGORITHM", "HS256")
    jwt_exp_minutes: int = int(os.getenv("SCHOOL_ADMIN_JWT_EXP_MINUTES", "60"))
    verification_exp_hours: int = int(os.getenv("VERIFICATION_TOKEN_TTL_HOURS", "24"))
    require_email_confirmation: bool = os.getenv("REQUIRE_EMAIL_CONFIRMATION", "false").lower() == "true"
    verification_link_base: str = os.getenv("VERIFICATION_LINK_BASE", "http://localhost:8000")
    smtp_host: str = os.getenv("SMTP_SERVER", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str = os.getenv("SMTP_EMAIL", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    allow_console_mail_fallback: bool = os.getenv("ALLOW_CONSOLE_MAIL_FALLBACK", "true").lower() == "true"
    cors_origins: tuple[str, ...] = field(
        default_factory=lambda: _csv(os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"))
    )

    # Idle timeout is UX only; jwt_exp_minutes is the authoritative expiry.
    session_timeout_minutes: int = int(os.getenv("SESSION_TIMEOUT_MINUTES", "30"))
    session_warning_minutes: int = int(os.getenv("SESSION_WARNING_MINUTES", "5"))
    timeout_check_seconds: int = int(os.getenv("SESSION_TIMEOUT_CHECK_SECONDS", "60"))
    countdown_tick_seconds: int = 1

    defaulter_preview_size: int = int(os.getenv("DEFAULTER_PREVIEW_SIZE", "10"))


settings = Settings()
