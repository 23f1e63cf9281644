"""Environment-based settings."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclasses.dataclass(frozen=True)
class Settings:
    signaling_url: str = "ws://localhost:8000"
    relay_host: str = "0.0.0.0"
    relay_port: int = 8000
    stun_servers: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
    media_source: str = ""
    media_format: str | None = None
    record_path: str | None = None
    polite: bool = True
    log_level: str = "INFO"


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _parse_port(name: str, value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"{name} out of range: {port}")
    return port


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from *environ* (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ
    defaults = Settings()

    stun = env.get("STUN_SERVERS")
    stun_servers = (
        tuple(s.strip() for s in stun.split(",") if s.strip())
        if stun is not None
        else defaults.stun_servers
    )

    return Settings(
        signaling_url=env.get("SIGNALING_URL", defaults.signaling_url),
        relay_host=env.get("RELAY_HOST", defaults.relay_host),
        relay_port=_parse_port("RELAY_PORT", env.get("RELAY_PORT", "8000")),
        stun_servers=stun_servers,
        media_source=env.get("MEDIA_SOURCE", ""),
        media_format=env.get("MEDIA_FORMAT") or None,
        record_path=env.get("RECORD_PATH") or None,
        polite=_parse_bool("POLITE", env.get("POLITE", "true")),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
    )
