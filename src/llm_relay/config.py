"""
config.py — Centralised configuration for the chat relay.

Upstream endpoints, storage locations, and tunable knobs live here.
Nothing deeper in the stack reads the environment directly; components
receive their values from ``settings`` when the Relay is constructed.
"""

from __future__ import annotations

import os


def _env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key, "").lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


class Settings:
    """
    Simple settings object populated from environment variables.

    Values are read on construction and again on ``reload()``, which the
    entry point calls after loading a ``.env`` file. Attributes may be
    overridden on the instance (tests do this).
    """

    # Server
    host: str
    port: int
    log_level: str
    debug: bool

    # Upstream provider
    openai_api_key: str
    openai_api_base: str
    default_model: str
    default_temperature: float

    # Discovery
    discovery_timeout: int
    catalogue_ttl_seconds: int

    # Storage
    data_dir: str
    public_dir: str

    # Observability
    call_log_capacity: int

    # CORS
    cors_allowed_origins: str
    cors_allow_all: bool

    def __init__(self) -> None:
        self.reload()

    def reload(self) -> None:
        self.host = os.getenv("RELAY_HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "3000"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.debug = _env_bool("DEBUG", False)

        self.openai_api_key = os.getenv("OPENAI_API_KEY", "")
        self.openai_api_base = os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1")
        self.default_model = os.getenv("DEFAULT_MODEL", "gpt-4o-mini")
        self.default_temperature = float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))

        self.discovery_timeout = int(os.getenv("DISCOVERY_TIMEOUT", "10"))
        self.catalogue_ttl_seconds = int(os.getenv("CATALOGUE_TTL_SECONDS", str(24 * 3600)))

        self.data_dir = os.getenv("DATA_DIR", ".")
        self.public_dir = os.getenv("PUBLIC_DIR", "public")

        self.call_log_capacity = int(os.getenv("CALL_LOG_CAPACITY", "300"))

        self.cors_allowed_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
        self.cors_allow_all = _env_bool("CORS_ALLOW_ALL", True)

    @property
    def cors_origins(self) -> list:
        """Return a list of allowed CORS origins. Empty list means none.

        The environment variable `CORS_ALLOWED_ORIGINS` may contain a
        comma-separated list of origins.
        """
        if self.cors_allow_all:
            return ["*"]
        raw = (self.cors_allowed_origins or "").strip()
        if not raw:
            return []
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def models_url(self) -> str:
        return self.openai_api_base.rstrip("/") + "/models"


settings = Settings()


def has_api_key(cfg: Settings | None = None) -> bool:
    """Return True if an upstream API key is configured."""
    cfg = cfg or settings
    return bool((cfg.openai_api_key or "").strip())
