import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from webpush_service.push.errors import ConfigurationError
from webpush_service.push.types import URGENCY_LEVELS
from webpush_service.push.vapid import VapidKeyPair

DEFAULT_BACKOFF_SCHEDULE = (10, 30, 60, 300, 900)  # seconds


@dataclass(frozen=True)
class RetryPolicy:
    """How the dispatch worker re-enqueues retryable deliveries.

    ``max_attempts`` counts the first delivery, so 1 disables retries.
    """

    max_attempts: int = 1
    backoff_schedule: Tuple[int, ...] = DEFAULT_BACKOFF_SCHEDULE

    def delay_for(self, attempt: int) -> int:
        index = min(attempt - 1, len(self.backoff_schedule) - 1)
        return self.backoff_schedule[max(index, 0)]


@dataclass(frozen=True)
class Settings:
    vapid: VapidKeyPair
    ttl: int = 86400
    urgency: str = "normal"
    icon: str = "/favicon.ico"
    badge: str = "/favicon.ico"
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    user_agent: str = "webpush-service/0.1"
    encrypt_payloads: bool = True
    max_concurrency: int = 10
    log_deliveries: bool = True
    queue_enabled: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _get_backoff(env: Mapping[str, str]) -> Tuple[int, ...]:
    raw = env.get("WEBPUSH_RETRY_BACKOFF")
    if not raw:
        return DEFAULT_BACKOFF_SCHEDULE
    try:
        schedule = tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigurationError(f"WEBPUSH_RETRY_BACKOFF must be comma-separated seconds, got {raw!r}")
    if not schedule or any(delay < 0 for delay in schedule):
        raise ConfigurationError("WEBPUSH_RETRY_BACKOFF must list non-negative delays")
    return schedule


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build the process-wide settings from the environment.

    Reads a ``.env`` file first when called without an explicit mapping.
    Raises ConfigurationError (VapidConfigError for key material) on any
    invalid value; callers treat that as fatal at startup.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    vapid = VapidKeyPair.from_base64url(
        subject=environ.get("WEBPUSH_VAPID_SUBJECT", ""),
        public_key=environ.get("WEBPUSH_VAPID_PUBLIC_KEY", ""),
        private_key=environ.get("WEBPUSH_VAPID_PRIVATE_KEY", ""),
    )

    urgency = environ.get("WEBPUSH_URGENCY") or "normal"
    if urgency not in URGENCY_LEVELS:
        raise ConfigurationError(
            f"WEBPUSH_URGENCY must be one of {', '.join(URGENCY_LEVELS)}, got {urgency!r}"
        )

    return Settings(
        vapid=vapid,
        ttl=_get_int(environ, "WEBPUSH_TTL", 86400),
        urgency=urgency,
        icon=environ.get("WEBPUSH_ICON") or "/favicon.ico",
        badge=environ.get("WEBPUSH_BADGE") or "/favicon.ico",
        request_timeout=_get_float(environ, "WEBPUSH_TIMEOUT", 30.0),
        connect_timeout=_get_float(environ, "WEBPUSH_CONNECT_TIMEOUT", 10.0),
        user_agent=environ.get("WEBPUSH_USER_AGENT") or "webpush-service/0.1",
        encrypt_payloads=_get_bool(environ, "WEBPUSH_ENCRYPT_PAYLOADS", True),
        max_concurrency=_get_int(environ, "WEBPUSH_MAX_CONCURRENCY", 10, minimum=1),
        log_deliveries=_get_bool(environ, "WEBPUSH_LOGGING", True),
        queue_enabled=_get_bool(environ, "WEBPUSH_QUEUE_ENABLED", False),
        retry=RetryPolicy(
            max_attempts=_get_int(environ, "WEBPUSH_RETRY_MAX_ATTEMPTS", 1, minimum=1),
            backoff_schedule=_get_backoff(environ),
        ),
    )
