"""
Runtime settings.

Everything is read from the environment once, into an immutable Settings
object that gets passed to whoever needs it. Nothing else in the package
reads os.environ directly (except the DB pool knobs in infra/sql.py).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

RECEIPT_BACKENDS = ("sql", "redis")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./tixrecon.db"

    # payment gateway
    gateway_server_key: str = ""
    gateway_base_url: str = "https://api.sandbox.midtrans.com"
    gateway_timeout: float = 5.0

    # auth
    cron_secret: str = ""
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    # sweep policy
    sweep_age_seconds: int = 30 * 60
    sweep_batch_size: int = 50
    sweep_concurrency: int = 8
    repair_grace_seconds: int = 5 * 60

    override_min_reason: int = 10
    max_tickets_per_order: int = 10
    ticket_prefix: str = "TCK"

    # webhook receipt archive: 'sql' | 'redis'
    receipt_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.receipt_backend not in RECEIPT_BACKENDS:
            raise ValueError(
                f"RECEIPT_BACKEND must be one of {RECEIPT_BACKENDS}, "
                f"got {self.receipt_backend!r}"
            )
        if self.sweep_batch_size < 1:
            raise ValueError("SWEEP_BATCH_SIZE must be positive")
        if self.gateway_timeout <= 0:
            raise ValueError("GATEWAY_TIMEOUT must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            return int(env.get(name, default))

        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            gateway_server_key=env.get("GATEWAY_SERVER_KEY", "").strip(),
            gateway_base_url=env.get(
                "GATEWAY_BASE_URL", cls.gateway_base_url
            ),
            gateway_timeout=float(
                env.get("GATEWAY_TIMEOUT", cls.gateway_timeout)
            ),
            cron_secret=env.get("CRON_SECRET", "").strip(),
            session_secret=env.get("SESSION_SECRET", cls.session_secret),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            sweep_age_seconds=_int("SWEEP_AGE_SECONDS", cls.sweep_age_seconds),
            sweep_batch_size=_int("SWEEP_BATCH_SIZE", cls.sweep_batch_size),
            sweep_concurrency=_int(
                "SWEEP_CONCURRENCY", cls.sweep_concurrency
            ),
            repair_grace_seconds=_int(
                "REPAIR_GRACE_SECONDS", cls.repair_grace_seconds
            ),
            override_min_reason=_int(
                "OVERRIDE_MIN_REASON", cls.override_min_reason
            ),
            max_tickets_per_order=_int(
                "MAX_TICKETS_PER_ORDER", cls.max_tickets_per_order
            ),
            ticket_prefix=env.get("TICKET_PREFIX", cls.ticket_prefix),
            receipt_backend=env.get(
                "RECEIPT_BACKEND", cls.receipt_backend
            ).lower(),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            redis_max_conn=_int("REDIS_MAX_CONN", cls.redis_max_conn),
            log_level=env.get("LOG_LEVEL", cls.log_level),
        )
