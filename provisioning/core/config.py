# provisioning/core/config.py
from functools import lru_cache
from dataclasses import dataclass
from typing import List, Optional

from json import loads as json_loads, JSONDecodeError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EMAIL_TTL_MINUTES = 60
DEFAULT_PHONE_TTL_MINUTES = 10
DEFAULT_REQUESTS_PER_HOUR = 5
DEFAULT_PHONE_MAX_ATTEMPTS = 5
DEFAULT_INVITATION_EXPIRY_HOURS = 72


@dataclass(frozen=True)
class VerificationConfig:
    """
    Immutable snapshot of the knobs the orchestrators need.

    Built once at startup (see Settings.verification_config) and handed to
    every service. Tests construct it directly with whatever values they need.
    """

    email_ttl_minutes: int = DEFAULT_EMAIL_TTL_MINUTES
    phone_ttl_minutes: int = DEFAULT_PHONE_TTL_MINUTES
    requests_per_hour: int = DEFAULT_REQUESTS_PER_HOUR
    phone_max_attempts: int = DEFAULT_PHONE_MAX_ATTEMPTS
    dev_mode: bool = False
    email_override: Optional[str] = None
    app_url: str = "http://localhost:3000"
    invitation_expiry_hours: int = DEFAULT_INVITATION_EXPIRY_HOURS
    require_verified_email: bool = False
    require_verified_phone: bool = False

    def __post_init__(self) -> None:
        for name in (
            "email_ttl_minutes",
            "phone_ttl_minutes",
            "phone_max_attempts",
            "invitation_expiry_hours",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be a positive integer")
        if int(self.requests_per_hour) < 0:
            raise ValueError("requests_per_hour must not be negative")


class Settings(BaseSettings):
    """
    Central configuration for the provisioning service.

    All values come from environment variables or .env.
    This is the single source of truth for:
    - environment (dev/staging/prod)
    - database URL
    - CORS / allowed origins
    - auth / token settings
    - verification + invitation lifecycle knobs
    - outbound email / SMS providers
    """

    # - extra="ignore": tolerate unrelated env vars shared with other services
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # High-level environment flags
    environment: str = Field(
        default="dev",
        description="Deployment environment identifier (dev|staging|prod)",
    )
    debug: bool = Field(default=True)

    # Database
    database_url: str = Field(
        default="sqlite:///./provisioning.db",
        description="SQLAlchemy-style DB URL (SQLite for dev, Postgres in prod).",
    )
    slow_db_query_ms: float = Field(
        default=250.0,
        description="Single statements slower than this are logged as slow_db_query.",
    )
    log_db_sql: bool = Field(
        default=False,
        description="Include the SQL head in slow query logs.",
    )
    slow_http_ms: float = Field(
        default=1500.0,
        description="Requests slower than this are logged at WARNING.",
    )

    # Auth / tokens (tokens are minted by the auth service; we only verify them)
    jwt_secret: str = Field(
        default="supersecret",
        description="JWT signing secret; override in all non-dev environments.",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm. HS256 by default.",
    )

    # CORS / frontends
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description=(
            "Allowed frontend origins, comma-separated or as a JSON list like "
            '["http://localhost:3000","http://127.0.0.1:3000"].'
        ),
    )
    app_url: str = Field(
        default="http://localhost:3000",
        description="Public frontend base URL used in verify/register links.",
    )

    # Verification lifecycle
    email_verification_ttl_min: int = Field(
        default=DEFAULT_EMAIL_TTL_MINUTES,
        description="Lifetime of an email verification link in minutes.",
    )
    phone_verification_ttl_min: int = Field(
        default=DEFAULT_PHONE_TTL_MINUTES,
        description="Lifetime of a phone verification code in minutes.",
    )
    verification_request_rate_limit_per_hour: int = Field(
        default=DEFAULT_REQUESTS_PER_HOUR,
        description="Max verification issuances per (user, kind) in a trailing hour.",
    )
    phone_verification_max_attempts: int = Field(
        default=DEFAULT_PHONE_MAX_ATTEMPTS,
        description="Wrong guesses allowed per phone code.",
    )
    verification_dev_mode: bool = Field(
        default=False,
        description="Echo plaintext tokens/codes in API responses (local testing only).",
    )
    verification_email_override: Optional[str] = Field(
        default=None,
        description="Redirect all outbound email to this address (staging).",
    )
    require_verified_email: bool = Field(default=False)
    require_verified_phone: bool = Field(default=False)

    # Invitations
    invitation_default_expiry_hours: int = Field(
        default=DEFAULT_INVITATION_EXPIRY_HOURS,
        description="Invitation lifetime when the admin does not pass one.",
    )
    register_rate_limit: int = Field(
        default=10,
        description="POST /register calls allowed per client IP per window.",
    )
    register_rate_window_seconds: int = Field(default=15 * 60)

    # Email delivery
    email_provider: str = Field(
        default="log",
        description="log|resend|smtp",
    )
    email_from: str = Field(default="Provisioning <no-reply@example.com>")
    resend_api_key: Optional[str] = Field(default=None)
    resend_from_email: Optional[str] = Field(default=None)
    smtp_host: Optional[str] = Field(default=None)
    smtp_port: int = Field(default=587)
    smtp_user: Optional[str] = Field(default=None)
    smtp_password: Optional[str] = Field(default=None)
    smtp_use_tls: bool = Field(default=True)

    # SMS delivery
    sms_provider: str = Field(
        default="log",
        description="log|http",
    )
    sms_gateway_url: Optional[str] = Field(default=None)
    sms_api_key: Optional[str] = Field(default=None)
    sms_from: Optional[str] = Field(default=None)

    @field_validator(
        "email_verification_ttl_min",
        "phone_verification_ttl_min",
        "verification_request_rate_limit_per_hour",
        "phone_verification_max_attempts",
        "invitation_default_expiry_hours",
        "register_rate_limit",
        "register_rate_window_seconds",
        mode="before",
    )
    @classmethod
    def _positive_int_or_default(cls, v, info):
        # Garbage or non-positive values silently fall back to the default.
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(v).strip())
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default

    @field_validator("verification_email_override", "resend_api_key", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    def origins_list(self) -> List[str]:
        """
        Normalize ALLOWED_ORIGINS into a clean List[str] for CORSMiddleware.
        Accepts either a comma-separated string or a JSON array.
        """
        raw_str = (self.allowed_origins or "").strip()
        if not raw_str:
            return []

        if raw_str.startswith("[") and raw_str.endswith("]"):
            try:
                parsed = json_loads(raw_str)
                if isinstance(parsed, list):
                    return [str(o).strip() for o in parsed if str(o).strip()]
            except JSONDecodeError:
                # Fall back to naive split if JSON is malformed
                pass

        return [o.strip() for o in raw_str.split(",") if o.strip()]

    @property
    def is_prod(self) -> bool:
        """
        Convenience flag: true if running in a production-like environment.
        """
        return self.environment.lower() in {"prod", "production"}

    @property
    def effective_email_from(self) -> str:
        return self.resend_from_email or self.email_from

    def verification_config(self) -> VerificationConfig:
        return VerificationConfig(
            email_ttl_minutes=self.email_verification_ttl_min,
            phone_ttl_minutes=self.phone_verification_ttl_min,
            requests_per_hour=self.verification_request_rate_limit_per_hour,
            phone_max_attempts=self.phone_verification_max_attempts,
            dev_mode=self.verification_dev_mode,
            email_override=self.verification_email_override,
            app_url=self.app_url.rstrip("/"),
            invitation_expiry_hours=self.invitation_default_expiry_hours,
            require_verified_email=self.require_verified_email,
            require_verified_phone=self.require_verified_phone,
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance so the app only parses env once.
    """
    return Settings()


settings = get_settings()
