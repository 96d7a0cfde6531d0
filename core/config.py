"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Pecal happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead, or
better, accept a Settings instance in the constructor so tests can inject one.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      lifespan in api/main.py reads it once and hands it to every service.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      policy: dev mode generates a key with a warning, production mode refuses
      to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens,
       admin tokens and OAuth state tokens are all HS256-signed with it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. There is no guessable fallback secret.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
workspace/, sharing/, or billing/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pecal.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pecal.db'}"

# Deep links shipped in released desktop/mobile builds. Always allowed so old
# clients keep working when the env allow-list is edited.
DEFAULT_DEEPLINK_CALLBACKS: tuple[str, ...] = (
    "deskcal://auth/callback",
    "deskcal-dev://auth/callback",
    "myapp://auth/callback",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    # Externally reachable origin, e.g. https://pecal.site. Used to build the
    # redirect_uri registered with each OAuth provider.
    public_base_url: str = ""

    # ------------------------------------------------------------------
    # Session credentials
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    admin_token_expire_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # OAuth federation
    # ------------------------------------------------------------------

    oauth_state_ttl_seconds: int = 600
    # Single deep link and comma-separated allow-list; both are merged with
    # DEFAULT_DEEPLINK_CALLBACKS.
    app_deeplink_scheme: str = ""
    app_deeplink_scheme_allowlist: str = ""

    google_client_id: str = ""
    google_client_secret: str = ""
    kakao_client_id: str = ""
    kakao_client_secret: str = ""

    # ------------------------------------------------------------------
    # Admin login brute-force guard
    # ------------------------------------------------------------------

    admin_lockout_threshold: int = 5
    admin_lockout_window_seconds: int = 15 * 60
    admin_lockout_seconds: int = 15 * 60

    # Comma-separated peers whose X-Forwarded-For is trusted (uvicorn
    # ProxyHeadersMiddleware). Anything else is keyed on the socket peer.
    forwarded_allow_ips: str = "127.0.0.1"

    # ------------------------------------------------------------------
    # Rate limiting (slowapi, per client IP)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    oauth_start_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # PayPal webhooks
    # ------------------------------------------------------------------

    paypal_mode: str = "sandbox"
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def deeplink_callbacks(self) -> list[str]:
        """Raw (un-normalized) callback candidates from env plus the built-in defaults."""
        raw: list[str] = []
        for candidate in (self.app_deeplink_scheme, self.app_deeplink_scheme_allowlist):
            raw.extend(v.strip() for v in candidate.split(",") if v.strip())
        raw.extend(DEFAULT_DEEPLINK_CALLBACKS)
        return raw

    @property
    def paypal_api_base_url(self) -> str:
        if self.paypal_mode.lower() == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the service under test.
    """
    return Settings()
