"""Configuration for the relay server, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "THREAD_RELAY_"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    """Read a positive integer, falling back to the default when malformed."""

    value = _env_str(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return default
    if parsed <= 0:
        logger.warning(f"Ignoring non-positive {name}={value!r}")
        return default
    return parsed


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass
class RelayConfig:
    """Runtime settings for the relay."""

    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"
    reload: bool = False
    ws_path: str = "/ws"
    upstream_base_url: Optional[str] = None
    # None leaves the page size of a full load to the upstream default.
    load_limit: Optional[int] = None
    update_window: int = 20
    title_template: str = "Thread {thread_id}"


def load_config() -> RelayConfig:
    """Build configuration from the environment and an optional .env file."""

    load_dotenv(find_dotenv(usecwd=True))
    defaults = RelayConfig()

    ws_path = _env_str(f"{ENV_PREFIX}WS_PATH", defaults.ws_path)
    if not ws_path.startswith("/"):
        ws_path = f"/{ws_path}"

    return RelayConfig(
        host=_env_str(f"{ENV_PREFIX}HOST", defaults.host),
        port=_env_int(f"{ENV_PREFIX}PORT", defaults.port),
        log_level=_env_str("LOG_LEVEL", defaults.log_level).upper(),
        reload=_env_bool(f"{ENV_PREFIX}RELOAD", defaults.reload),
        ws_path=ws_path,
        upstream_base_url=_env_str("OPENAI_BASE_URL", defaults.upstream_base_url),
        load_limit=_env_int(f"{ENV_PREFIX}LOAD_LIMIT", defaults.load_limit),
        update_window=_env_int(f"{ENV_PREFIX}UPDATE_WINDOW", defaults.update_window),
    )
