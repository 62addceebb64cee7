import os

from functools import lru_cache
from typing import Optional
from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RateLimitSpec(BaseModel):
    max_requests: int
    window_seconds: float


class Settings(BaseModel):
    database_url: str = "sqlite:///./update_server.db"
    server_url: str = "http://localhost:3000"
    upload_dir: str = "./uploads"

    github_api_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    github_webhook_secret: Optional[str] = None

    jwt_secret: Optional[str] = None
    jwt_expires_hours: int = 24
    admin_username: str = "admin"
    admin_password: Optional[str] = None

    # Update checks are public unless this is set
    require_api_key: bool = False

    request_timeout: float = 15.0
    download_timeout: float = 30.0
    sync_workers: int = 4

    rate_limits: dict[str, RateLimitSpec] = {
        "updates": RateLimitSpec(max_requests=200, window_seconds=15 * 60),
        "login": RateLimitSpec(max_requests=5, window_seconds=60),
        "admin": RateLimitSpec(max_requests=100, window_seconds=15 * 60),
        "webhooks": RateLimitSpec(max_requests=300, window_seconds=60),
    }

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, keeping defaults for unset ones."""
        defaults = cls()
        rate_limits = {}
        for route_class, spec in defaults.rate_limits.items():
            prefix = f"RATE_LIMIT_{route_class.upper()}"
            rate_limits[route_class] = RateLimitSpec(
                max_requests=int(os.getenv(f"{prefix}_MAX", spec.max_requests)),
                window_seconds=float(os.getenv(f"{prefix}_WINDOW", spec.window_seconds)),
            )

        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            server_url=os.getenv("SERVER_URL", defaults.server_url).rstrip("/"),
            upload_dir=os.getenv("UPLOAD_DIR", defaults.upload_dir),
            github_api_url=os.getenv("GITHUB_API_URL", defaults.github_api_url).rstrip("/"),
            github_token=os.getenv("GITHUB_TOKEN") or None,
            github_webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            jwt_expires_hours=int(os.getenv("JWT_EXPIRES_HOURS", defaults.jwt_expires_hours)),
            admin_username=os.getenv("ADMIN_USERNAME", defaults.admin_username),
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            require_api_key=_env_bool("REQUIRE_API_KEY", defaults.require_api_key),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", defaults.request_timeout)),
            download_timeout=float(os.getenv("DOWNLOAD_TIMEOUT", defaults.download_timeout)),
            sync_workers=int(os.getenv("SYNC_WORKERS", defaults.sync_workers)),
            rate_limits=rate_limits,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
