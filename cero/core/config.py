from __future__ import annotations

from functools import lru_cache
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Config and secrets files share the KEY=VALUE dotenv format; unknown keys are tolerated.
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "cero"
    host: str = "0.0.0.0"
    port: int = 8080

    log_level: str = "INFO"
    # Empty disables the file handler and logs to stderr only.
    log_path: str = "logs/app.log"

    # SQLite file used when DATABASE_URL is not set.
    db_path: str = "data/app.db"
    database_url: str | None = None

    # Absolute session lifetime; never extended by activity.
    session_expiry_seconds: int = 7 * 24 * 60 * 60
    # Sliding inactivity window refreshed on every authenticated request.
    session_inactivity_seconds: int = 24 * 60 * 60
    session_cookie_name: str = "session_token"
    # Enable behind HTTPS so browsers only send the cookie over TLS.
    session_cookie_secure: bool = False
    # Delete expired and idle sessions once before serving.
    session_sweep_on_startup: bool = True

    # bcrypt cost factor; each increment doubles hashing time.
    bcrypt_rounds: int = 12

    rate_limit_enabled: bool = True
    # Sustained per-client request rate.
    rate_limit_requests_per_minute: int = 60
    # Bucket capacity; defaults to one minute of sustained traffic.
    rate_limit_burst: int | None = None
    # memory keeps buckets in-process; redis shares them through REDIS_URL.
    rate_limit_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    rl_redis_prefix: str = "cero:rl"
    # open lets requests through when the limiter backend fails; closed rejects them.
    rl_fail_mode: str = "open"

    # HMAC key for form CSRF tokens; a per-process key is generated when unset.
    csrf_secret: SecretStr | None = None
    # Bootstrap administrator created at startup when both values are present.
    admin_email: str | None = None
    admin_password_hash: SecretStr | None = None

    def sqlalchemy_url(self) -> str:
        # Prefer an explicit DATABASE_URL; otherwise use the SQLite file at db_path.
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.db_path}"

    def rate_limit_capacity(self) -> int:
        if self.rate_limit_burst is not None:
            return max(1, self.rate_limit_burst)
        return max(1, self.rate_limit_requests_per_minute)


_settings_files: tuple[str, ...] = ()


def configure_settings_files(*paths: str | None) -> None:
    # Point settings at the CLI-supplied config/secrets files and drop cached values.
    global _settings_files
    _settings_files = tuple(path for path in paths if path)
    get_settings.cache_clear()


@lru_cache
def get_settings() -> Settings:
    if _settings_files:
        return Settings(_env_file=_settings_files)
    return Settings()
