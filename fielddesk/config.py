"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    # App
    APP_NAME: str = "FieldDesk"
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "change-me-in-production"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Database
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    BROADCAST_CHANNEL: str = "fielddesk:events"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # JWT
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    JWT_LEEWAY_SECONDS: int = 30  # clock skew tolerance for exp validation

    # Password policy (reset-password flow)
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_MAX_LENGTH: int = 128

    # Ticket policy
    # Callers with these roles create tickets that skip the approval queue.
    AUTO_APPROVE_ROLES: str = "system"
    SELF_ASSIGN_ENABLED: bool = True
    STAFF_NOTIFY_ROLES: str = "admin,superadmin"

    # Envelope dispatch
    DISPATCH_INTERVAL_SECONDS: float = 5.0
    DISPATCH_BATCH_SIZE: int = 10
    DISPATCH_MAX_ATTEMPTS: int = 3
    # 0 keeps the implicit backoff (one poll interval between attempts).
    DISPATCH_BACKOFF_BASE_SECONDS: int = 0
    DISPATCH_BACKOFF_MAX_SECONDS: int = 300

    # Messaging gateway. Unset means every send is reported unreachable.
    TRANSPORT_BASE_URL: str | None = None
    TRANSPORT_API_KEY: str | None = None
    TRANSPORT_TIMEOUT_SECONDS: float = 10.0
    TRANSPORT_CHANNEL: str = "whatsapp"

    # One-time codes
    OTP_LENGTH: int = 6
    OTP_TTL_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5
    OTP_ISSUE_LIMIT_PER_HOUR: int = 5
    OTP_RETENTION_HOURS: int = 24

    # Completion evidence
    UPLOAD_DIR: str = "./uploads"
    MAX_UPLOAD_SIZE: int = 10485760  # 10MB
    ALLOWED_EXTENSIONS: str = "jpg,jpeg,png,webp,pdf"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def allowed_extensions_list(self) -> list[str]:
        """Get allowed extensions as list."""
        return [ext.strip() for ext in self.ALLOWED_EXTENSIONS.split(",")]

    @property
    def auto_approve_roles(self) -> set[str]:
        return {role.strip() for role in self.AUTO_APPROVE_ROLES.split(",") if role.strip()}

    @property
    def staff_notify_roles(self) -> list[str]:
        return [role.strip() for role in self.STAFF_NOTIFY_ROLES.split(",") if role.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
