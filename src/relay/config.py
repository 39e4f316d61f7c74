from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional


# Environment configuration
ENV_PERSISTENCE = "RELAY_PERSISTENCE"  # "s3" or "none"
ENV_STATE_BUCKET = "RELAY_STATE_BUCKET"
ENV_STATE_PREFIX = "RELAY_STATE_PREFIX"
ENV_SESSION_KEY = "RELAY_SESSION_KEY"
ENV_FERNET_KEY = "RELAY_FERNET_KEY"
ENV_PARAM_PREFIX = "RELAY_PARAM_PREFIX"
ENV_GATEWAY_URL = "RELAY_GATEWAY_URL"
ENV_GATEWAY_TOKEN = "RELAY_GATEWAY_TOKEN"
ENV_BRAND = "RELAY_BRAND"
ENV_LOG_LEVEL = "RELAY_LOG_LEVEL"
ENV_AUTO_REPLY = "RELAY_AUTO_REPLY"
ENV_SUPPORT_URL = "RELAY_SUPPORT_URL"

PERSISTENCE_S3 = "s3"
PERSISTENCE_NONE = "none"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise RuntimeError(f"Invalid boolean for {name}: {raw!r}")


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid number for {name}: {raw!r}") from exc


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for {name}: {raw!r}") from exc


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


@dataclass(frozen=True)
class RelaySettings:
    """Runtime settings for one relay process. Defaults mirror the production deployment."""

    persistence: str = PERSISTENCE_NONE
    state_bucket: Optional[str] = None
    state_prefix: str = "sessions/"
    session_key: str = "relay-main-session"
    fernet_key: Optional[str] = None

    gateway_url: str = "http://localhost:3000"
    gateway_token: Optional[str] = None
    gateway_poll_interval: float = 2.0

    rate_limit: int = 3
    rate_window_seconds: float = 3600.0

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    send_spacing_seconds: float = 2.0
    send_timeout_seconds: float = 120.0

    reconnect_delay_seconds: float = 10.0
    init_timeout_seconds: float = 90.0
    shutdown_grace_seconds: float = 10.0

    brand: Optional[str] = None
    auto_reply: bool = True
    support_url: str = "https://tabeebak.com"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """
        Build settings from RELAY_* environment variables.

        Secrets (`fernet_key`, `gateway_token`) fall back to SSM parameters under
        RELAY_PARAM_PREFIX when not set directly. S3 persistence is selected when a
        bucket is configured unless RELAY_PERSISTENCE says otherwise; it then needs
        a Fernet key.
        """
        bucket = _getenv(ENV_STATE_BUCKET)
        persistence = (_getenv(ENV_PERSISTENCE) or (PERSISTENCE_S3 if bucket else PERSISTENCE_NONE)).lower()
        if persistence not in (PERSISTENCE_S3, PERSISTENCE_NONE):
            raise RuntimeError(f"Invalid {ENV_PERSISTENCE}: {persistence!r} (expected 's3' or 'none')")

        fernet_key = _getenv(ENV_FERNET_KEY)
        gateway_token = _getenv(ENV_GATEWAY_TOKEN)
        prefix = _getenv(ENV_PARAM_PREFIX)
        if prefix and (fernet_key is None or gateway_token is None):
            params = _load_ssm_params(prefix, ["fernet_key", "gateway_token"])
            fernet_key = fernet_key or params.get("fernet_key")
            gateway_token = gateway_token or params.get("gateway_token")

        if persistence == PERSISTENCE_S3:
            bucket = _require(bucket, ENV_STATE_BUCKET)
            fernet_key = _require(fernet_key, f"{ENV_FERNET_KEY} (or {prefix or '<prefix>'}fernet_key)")

        return cls(
            persistence=persistence,
            state_bucket=bucket,
            state_prefix=_getenv(ENV_STATE_PREFIX, "sessions/") or "sessions/",
            session_key=_getenv(ENV_SESSION_KEY, "relay-main-session") or "relay-main-session",
            fernet_key=fernet_key,
            gateway_url=_getenv(ENV_GATEWAY_URL, "http://localhost:3000") or "http://localhost:3000",
            gateway_token=gateway_token,
            gateway_poll_interval=_getfloat("RELAY_GATEWAY_POLL_SECONDS", 2.0),
            rate_limit=_getint("RELAY_RATE_LIMIT", 3),
            rate_window_seconds=_getfloat("RELAY_RATE_WINDOW_SECONDS", 3600.0),
            max_attempts=_getint("RELAY_MAX_ATTEMPTS", 3),
            backoff_seconds=_getfloat("RELAY_BACKOFF_SECONDS", 1.0),
            send_spacing_seconds=_getfloat("RELAY_SEND_SPACING_SECONDS", 2.0),
            send_timeout_seconds=_getfloat("RELAY_SEND_TIMEOUT_SECONDS", 120.0),
            reconnect_delay_seconds=_getfloat("RELAY_RECONNECT_DELAY_SECONDS", 10.0),
            init_timeout_seconds=_getfloat("RELAY_INIT_TIMEOUT_SECONDS", 90.0),
            shutdown_grace_seconds=_getfloat("RELAY_SHUTDOWN_GRACE_SECONDS", 10.0),
            brand=_getenv(ENV_BRAND),
            auto_reply=_getbool(ENV_AUTO_REPLY, True),
            support_url=_getenv(ENV_SUPPORT_URL, "https://tabeebak.com") or "https://tabeebak.com",
            log_level=_getenv(ENV_LOG_LEVEL, "INFO") or "INFO",
        )


__all__ = [
    "PERSISTENCE_NONE",
    "PERSISTENCE_S3",
    "RelaySettings",
]
