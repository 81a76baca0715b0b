"""Configuration loading: built-in defaults, config/config.json, then environment."""

import copy
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_FILE = BASE_DIR / "config" / "config.json"

DEFAULT_CONFIG = {
    "server": {"host": "0.0.0.0", "port": 3000},
    "storage": {"db_path": str(BASE_DIR / "data" / "ringrelay.db")},
    "session": {
        "max_segments": 5,
        "idle_timeout": 5.0,
        "monitor_interval": 1.0,
        "processing_timeout": 120.0,
        "instant_session_prefix": "test_session",
    },
    "ringcentral": {
        "server_url": "https://platform.ringcentral.com",
        "client_id": "",
        "client_secret": "",
        "redirect_uri": "",
    },
    "llm": {"api_key": "", "model": "gpt-4o", "base_url": ""},
    "omi": {"app_id": "", "app_secret": ""},
    "webhook_secret": "",
    "log_level": "INFO",
}

# env var -> (section, key); section None means top level
ENV_OVERRIDES = {
    "PORT": ("server", "port"),
    "RINGRELAY_DB_PATH": ("storage", "db_path"),
    "RINGCENTRAL_SERVER_URL": ("ringcentral", "server_url"),
    "RINGCENTRAL_CLIENT_ID": ("ringcentral", "client_id"),
    "RINGCENTRAL_CLIENT_SECRET": ("ringcentral", "client_secret"),
    "REDIRECT_URI": ("ringcentral", "redirect_uri"),
    "OPENAI_API_KEY": ("llm", "api_key"),
    "OPENAI_MODEL": ("llm", "model"),
    "OPENAI_BASE_URL": ("llm", "base_url"),
    "OMI_APP_ID": ("omi", "app_id"),
    "OMI_APP_SECRET": ("omi", "app_secret"),
    "WEBHOOK_SECRET": (None, "webhook_secret"),
    "LOG_LEVEL": (None, "log_level"),
}


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(current, raw: str):
    """Cast an env string to the type of the value it replaces."""
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_config(path: str = None, env: dict = None) -> dict:
    """Build the effective configuration.

    Args:
        path: JSON config file; defaults to config/config.json. Missing files are fine.
        env: Environment mapping; defaults to os.environ.

    Returns:
        Nested config dict.

    Raises:
        ValueError: The config file is not valid JSON.
    """
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(path) if path else CONFIG_FILE
    if config_path.exists():
        try:
            with open(config_path) as f:
                _merge(cfg, json.load(f))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid config file {config_path}: {e}") from e

    env = os.environ if env is None else env
    for var, (section, key) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if not raw:
            continue
        target = cfg if section is None else cfg.setdefault(section, {})
        target[key] = _coerce(target.get(key), raw)
    return cfg


def save_config(cfg: dict, path: str = None):
    config_path = Path(path) if path else CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(cfg, f, indent=2)
