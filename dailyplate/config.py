from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from .errors import ConfigError

# ----------------------------
# Config & Constants
# ----------------------------
PROCESSOR_BACKENDS = ("mercadopago", "mock")

# seconds to wait before each payment lookup; 404s are retried
FETCH_DELAYS: Tuple[float, ...] = (0.0, 0.7, 1.4, 2.1)

DEFAULT_FRETE = "7.00"


@dataclass(frozen=True)
class Settings:
    database_url: str
    webhook_secret: str
    site_url: str = "http://localhost:8000"
    mp_access_token: Optional[str] = None
    mp_api_url: str = "https://api.mercadopago.com"
    auth_url: Optional[str] = None
    auth_anon_key: Optional[str] = None
    processor_backend: str = "mercadopago"
    fetch_delays: Tuple[float, ...] = FETCH_DELAYS
    log_level: str = "INFO"
    log_json: bool = True
    db_pool: Mapping[str, int] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return self.site_url.rstrip("/")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        missing = [
            name for name in ("DATABASE_URL", "MP_WEBHOOK_SECRET")
            if not env.get(name)
        ]
        backend = env.get("PROCESSOR_BACKEND", "mercadopago").lower()
        if backend not in PROCESSOR_BACKENDS:
            raise ConfigError(
                f"PROCESSOR_BACKEND must be one of {PROCESSOR_BACKENDS}, "
                f"got {backend!r}"
            )
        if backend == "mercadopago" and not env.get("MP_ACCESS_TOKEN"):
            missing.append("MP_ACCESS_TOKEN")
        if missing:
            raise ConfigError(
                "missing environment variable(s): " + ", ".join(missing)
            )

        pool = {}
        for key, name in (("pool_size", "DB_POOL_SIZE"),
                          ("max_overflow", "DB_MAX_OVERFLOW"),
                          ("pool_timeout", "DB_POOL_TIMEOUT"),
                          ("gate_limit", "DB_GATE_LIMIT")):
            if env.get(name):
                pool[key] = int(env[name])

        site_url = (
            env.get("SITE_URL")
            or (f"https://{env['VERCEL_URL']}" if env.get("VERCEL_URL")
                else "")
            or "http://localhost:8000"
        )

        return cls(
            database_url=env["DATABASE_URL"],
            webhook_secret=env["MP_WEBHOOK_SECRET"],
            site_url=site_url,
            mp_access_token=env.get("MP_ACCESS_TOKEN") or None,
            mp_api_url=env.get("MP_API_URL", "https://api.mercadopago.com"),
            auth_url=env.get("AUTH_URL") or None,
            auth_anon_key=env.get("AUTH_ANON_KEY") or None,
            processor_backend=backend,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_json=env.get("LOG_JSON", "1") not in ("0", "false", "no"),
            db_pool=pool,
        )
