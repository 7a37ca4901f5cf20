import os
from dataclasses import dataclass
from typing import Mapping, Optional


# ----------------------------
# Config
# ----------------------------
PAYSESSION_BACKENDS = ("pg", "redis")
CACHE_BACKENDS = ("memory", "redis")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    database_url: str
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"

    paysession_backend: str = "pg"  # 'pg' | 'redis'
    cache_backend: str = "memory"  # 'memory' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512

    currency: str = "eur"
    default_ticket_price: int = 5000  # cents
    payment_session_ttl: int = 300  # seconds
    cache_ttl: int = 60  # seconds
    cache_capacity: int = 256
    verify_base_url: str = "http://localhost:8000/verify"

    log_level: str = "info"
    log_json: bool = True

    def __post_init__(self) -> None:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL is required")
        if self.paysession_backend not in PAYSESSION_BACKENDS:
            raise RuntimeError(
                f"unknown PAYSESSION_BACKEND: {self.paysession_backend}"
            )
        if self.cache_backend not in CACHE_BACKENDS:
            raise RuntimeError(
                f"unknown CACHE_BACKEND: {self.cache_backend}"
            )

    @property
    def uses_redis(self) -> bool:
        return "redis" in (self.paysession_backend, self.cache_backend)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if env is None else env
        database_url = env.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("NEED DATABASE_URL!")

        gate = env.get("DB_GATE_LIMIT")
        d = cls.__dataclass_fields__
        return cls(
            database_url=database_url,
            db_pool_size=_int(env, "DB_POOL_SIZE", d["db_pool_size"].default),
            db_max_overflow=_int(env, "DB_MAX_OVERFLOW",
                                 d["db_max_overflow"].default),
            db_pool_timeout=_int(env, "DB_POOL_TIMEOUT",
                                 d["db_pool_timeout"].default),
            db_gate_limit=int(gate) if gate else None,
            session_secret=env.get("SESSION_SECRET",
                                   d["session_secret"].default),
            admin_username=env.get("ADMIN_USERNAME",
                                   d["admin_username"].default),
            admin_password=env.get("ADMIN_PASSWORD",
                                   d["admin_password"].default),
            mock_secret=env.get("MOCK_SECRET", d["mock_secret"].default),
            mock_webhook_url=env.get("MOCK_WEBHOOK_URL",
                                     d["mock_webhook_url"].default),
            paysession_backend=env.get(
                "PAYSESSION_BACKEND", d["paysession_backend"].default
            ).lower(),
            cache_backend=env.get(
                "CACHE_BACKEND", d["cache_backend"].default
            ).lower(),
            redis_url=env.get("REDIS_URL", d["redis_url"].default),
            redis_max_conn=_int(env, "REDIS_MAX_CONN",
                                d["redis_max_conn"].default),
            currency=env.get("CURRENCY", d["currency"].default).lower(),
            default_ticket_price=_int(env, "DEFAULT_TICKET_PRICE",
                                      d["default_ticket_price"].default),
            payment_session_ttl=_int(env, "PAYMENT_SESSION_TTL",
                                     d["payment_session_ttl"].default),
            cache_ttl=_int(env, "CACHE_TTL", d["cache_ttl"].default),
            cache_capacity=_int(env, "CACHE_CAPACITY",
                                d["cache_capacity"].default),
            verify_base_url=env.get("VERIFY_BASE_URL",
                                    d["verify_base_url"].default),
            log_level=env.get("LOG_LEVEL", d["log_level"].default).lower(),
            log_json=_bool(env, "LOG_JSON", d["log_json"].default),
        )
