"""
Builder configuration.

Settings come from a JSON file (data/builder_config.json by default) and
may be overridden by environment variables. A .env file in the working
directory is loaded first so local credentials never live in the JSON file.

Environment overrides:
    BUILDER_BASE_URL, BUILDER_API_VERSION, BUILDER_ACCESS_TOKEN,
    BUILDER_REQUEST_TIMEOUT, BUILDER_DEBOUNCE_SECONDS,
    BUILDER_MIN_SEARCH_CHARS, BUILDER_MESSAGE_LOG_LIMIT,
    BUILDER_SNAPSHOT_DIR, BUILDER_LOG_LEVEL
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "data/builder_config.json"


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_int(key: str, default: int) -> int:
    value = _env_str(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {key}={value!r}")
        return default


def _env_float(key: str, default: float) -> float:
    value = _env_str(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {key}={value!r}")
        return default


@dataclass(frozen=True)
class BuilderConfig:
    """
    Immutable runtime settings for an edit session.

    Attributes:
        base_url: Content API root, without the version segment
        api_version: Version path segment appended to base_url
        access_token: Bearer token supplied by the host environment
        request_timeout_seconds: Upper bound for any single API call
        debounce_seconds: Typeahead quiet period before a search fires
        min_search_chars: Shorter queries clear results instead of searching
        message_log_limit: Rolling message log capacity
        snapshot_dir: Directory for saved session snapshots
        log_level: Root logging level name
    """
    base_url: str = "http://localhost:8000/api"
    api_version: str = "v1"
    access_token: str = ""
    request_timeout_seconds: float = 15.0
    debounce_seconds: float = 0.4
    min_search_chars: int = 2
    message_log_limit: int = 50
    snapshot_dir: str = "outputs/sessions"
    log_level: str = "INFO"

    @property
    def api_root(self) -> str:
        """Base URL joined with the version segment."""
        return f"{self.base_url.rstrip('/')}/{self.api_version.strip('/')}"

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BuilderConfig":
        """
        Build config from a plain dict, ignoring unknown keys.

        Args:
            data: Parsed JSON config

        Returns:
            BuilderConfig with defaults for missing keys
        """
        known = {name for name in BuilderConfig.__dataclass_fields__}
        unknown = set(data) - known - {'version'}
        if unknown:
            logger.warning(f"Unknown config keys ignored: {sorted(unknown)}")
        return BuilderConfig(**{k: v for k, v in data.items() if k in known})

    def with_env_overrides(self) -> "BuilderConfig":
        """Return a copy with BUILDER_* environment variables applied."""
        return replace(
            self,
            base_url=_env_str("BUILDER_BASE_URL", self.base_url),
            api_version=_env_str("BUILDER_API_VERSION", self.api_version),
            access_token=_env_str("BUILDER_ACCESS_TOKEN", self.access_token) or "",
            request_timeout_seconds=_env_float("BUILDER_REQUEST_TIMEOUT", self.request_timeout_seconds),
            debounce_seconds=_env_float("BUILDER_DEBOUNCE_SECONDS", self.debounce_seconds),
            min_search_chars=_env_int("BUILDER_MIN_SEARCH_CHARS", self.min_search_chars),
            message_log_limit=_env_int("BUILDER_MESSAGE_LOG_LIMIT", self.message_log_limit),
            snapshot_dir=_env_str("BUILDER_SNAPSHOT_DIR", self.snapshot_dir),
            log_level=_env_str("BUILDER_LOG_LEVEL", self.log_level),
        )


def load_config(config_path: Optional[str] = None, use_env: bool = True) -> BuilderConfig:
    """
    Load builder configuration.

    Args:
        config_path: JSON config path (default: data/builder_config.json)
        use_env: Apply .env and BUILDER_* environment overrides

    Returns:
        BuilderConfig

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
    """
    if use_env:
        load_dotenv(Path.cwd() / ".env")

    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if path.exists():
        with open(path, 'r') as f:
            config = BuilderConfig.from_dict(json.load(f))
        logger.info(f"Loaded builder config from {path}")
    elif config_path is not None:
        raise FileNotFoundError(f"Builder config not found: {config_path}")
    else:
        config = BuilderConfig()
        logger.info("No builder config file found, using defaults")

    return config.with_env_overrides() if use_env else config
