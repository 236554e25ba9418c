"""
Configuration loader for the repository engine.

Settings come from an optional engine.env file, overridden by
REPOENGINE_* environment variables, validated against
schemas/engine.schema.json.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from . import validate

logger = logging.getLogger(__name__)

ENV_PREFIX = "REPOENGINE_"
CONFIG_FILENAME = "engine.env"

BACKEND_AUTO = "auto"
BACKEND_NATIVE = "native"
BACKEND_EMBEDDED = "embedded"


@dataclass
class EngineConfig:
    """Engine-wide settings. Defaults apply when a key is absent."""
    git_binary: str = "git"
    backend: str = BACKEND_AUTO
    git_timeout: int = 30
    network_timeout: int = 600
    branch_ttl_ms: int = 15000
    workdir_ttl_ms: int = 3000
    status_ttl_ms: int = 2000
    cache_max_entries: int = 64
    cache_low_watermark: int = 48
    blame_depth: int = 50
    ahead_behind_depth: int = 200
    log_page_size: int = 20
    lock_timeout: int = 60
    workers: int = 4


def _env_overrides(environ) -> dict[str, str]:
    """Collect REPOENGINE_* variables with the prefix stripped."""
    return {
        key[len(ENV_PREFIX):]: value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX) and key != f"{ENV_PREFIX}CONFIG"
    }


def load_engine_config(path: Path | None = None, environ=None) -> EngineConfig:
    """
    Load engine.env (if any) and apply environment overrides.

    Args:
        path: Explicit config file. Defaults to $REPOENGINE_CONFIG, then
              ./engine.env when it exists.
        environ: Mapping used for overrides (defaults to os.environ)

    Raises:
        FileNotFoundError: explicit path does not exist
        ValueError: env file syntax is invalid
        validate.ValidationError: a value fails the schema
    """
    environ = os.environ if environ is None else environ

    if path is None and environ.get(f"{ENV_PREFIX}CONFIG"):
        path = Path(environ[f"{ENV_PREFIX}CONFIG"])

    env: dict[str, str] = {}
    if path is not None:
        env = envparse.load_env(path)
    elif Path(CONFIG_FILENAME).exists():
        env = envparse.load_env(CONFIG_FILENAME)

    env.update(_env_overrides(environ))
    validate.validate(env, "engine")

    defaults = EngineConfig()
    config = EngineConfig(
        git_binary=env.get("GIT_BINARY", defaults.git_binary),
        backend=env.get("BACKEND", defaults.backend),
        git_timeout=int(env.get("GIT_TIMEOUT", defaults.git_timeout)),
        network_timeout=int(env.get("NETWORK_TIMEOUT", defaults.network_timeout)),
        branch_ttl_ms=int(env.get("BRANCH_TTL_MS", defaults.branch_ttl_ms)),
        workdir_ttl_ms=int(env.get("WORKDIR_TTL_MS", defaults.workdir_ttl_ms)),
        status_ttl_ms=int(env.get("STATUS_TTL_MS", defaults.status_ttl_ms)),
        cache_max_entries=int(env.get("CACHE_MAX_ENTRIES", defaults.cache_max_entries)),
        cache_low_watermark=int(env.get("CACHE_LOW_WATERMARK", defaults.cache_low_watermark)),
        blame_depth=int(env.get("BLAME_DEPTH", defaults.blame_depth)),
        ahead_behind_depth=int(env.get("AHEAD_BEHIND_DEPTH", defaults.ahead_behind_depth)),
        log_page_size=int(env.get("LOG_PAGE_SIZE", defaults.log_page_size)),
        lock_timeout=int(env.get("LOCK_TIMEOUT", defaults.lock_timeout)),
        workers=int(env.get("WORKERS", defaults.workers)),
    )

    if config.cache_low_watermark >= config.cache_max_entries:
        raise validate.ValidationError(
            "engine",
            f"CACHE_LOW_WATERMARK ({config.cache_low_watermark}) must be below "
            f"CACHE_MAX_ENTRIES ({config.cache_max_entries})",
            "CACHE_LOW_WATERMARK",
        )

    logger.debug(f"Loaded engine config: backend={config.backend}, git={config.git_binary}")
    return config
