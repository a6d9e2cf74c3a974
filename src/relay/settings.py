"""
Configuration loading for the relay.

Settings come from an optional TOML file (``WA_RELAY_CONFIG``, default
``./config/settings.toml``) and are then overridden by environment
variables, so a plain ``.env``-style deployment works without any file.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import toml

from shared.secrets import get_optional_secret

logger = logging.getLogger("relay.settings")

_DEFAULT_CONFIG_PATH = Path("./config/settings.toml")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "storage": {
        "url": None,
        "service_key": None,
        "bucket": "pdf-notes",
        "prefix": "",
        "list_limit": 100,
        "timeout_seconds": 30.0,
    },
    "relay": {
        "group_jid": None,
        "poll_interval_seconds": 10.0,
        "ledger_path": "./sent_cache.json",
        "document_suffix": ".pdf",
        "message_template": "📄 New PDF uploaded: *{name}*\n{url}",
        "outbox_batch_size": 50,
    },
    "session": {
        "auth_dir": "./auth_info",
        "archive_on_logout": True,
    },
    "reconnect": {
        "initial_delay_seconds": 1.0,
        "max_delay_seconds": 60.0,
        "multiplier": 2.0,
        "jitter": 0.2,
    },
    "pairing": {
        "host": "127.0.0.1",
        "port": 3000,
        "open_browser": True,
        "print_terminal": False,
    },
    "database": {
        "dsn": None,
        "min_size": 1,
        "max_size": 5,
        "init_schema": False,
    },
    "audit": {
        "log_path": "./logs/audit.log",
    },
}


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


def _millis_to_seconds(value: str) -> float:
    return float(value) / 1000.0


# env var -> (section, key, converter)
_ENV_OVERRIDES: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "SUPABASE_URL": ("storage", "url", str),
    "SUPABASE_SERVICE_KEY": ("storage", "service_key", str),
    "BUCKET_NAME": ("storage", "bucket", str),
    "GROUP_JID": ("relay", "group_jid", str),
    "POLL_MS": ("relay", "poll_interval_seconds", _millis_to_seconds),
    "SENT_CACHE_FILE": ("relay", "ledger_path", str),
    "AUTH_DIR": ("session", "auth_dir", str),
    "QR_PORT": ("pairing", "port", int),
    "DATABASE_URL": ("database", "dsn", str),
    "AUDIT_LOG_PATH": ("audit", "log_path", str),
}

_REQUIRED = (
    ("storage", "url"),
    ("storage", "service_key"),
    ("relay", "group_jid"),
)

_POSITIVE = (
    ("storage", "list_limit"),
    ("relay", "poll_interval_seconds"),
    ("relay", "outbox_batch_size"),
    ("reconnect", "max_delay_seconds"),
    ("reconnect", "multiplier"),
)


def _merge(base: Dict[str, Dict[str, Any]], overlay: Mapping[str, Any]) -> None:
    for section, values in overlay.items():
        if isinstance(values, Mapping):
            base.setdefault(section, {}).update(values)
        else:
            base[section] = values


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Load, merge, and validate relay settings.

    Args:
        path: TOML file to read.  Defaults to ``WA_RELAY_CONFIG`` or
              ``./config/settings.toml``; a missing default file is fine.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Nested configuration dictionary with defaults filled in.

    Raises:
        ConfigError: If required keys are missing or values are invalid.
    """
    env = os.environ if environ is None else environ
    config: Dict[str, Any] = copy.deepcopy(DEFAULTS)

    explicit = path is not None or bool(env.get("WA_RELAY_CONFIG"))
    if path is None:
        path = Path(env.get("WA_RELAY_CONFIG") or _DEFAULT_CONFIG_PATH)
    if path.exists():
        try:
            _merge(config, toml.load(path))
        except (toml.TomlDecodeError, OSError) as exc:
            raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
        config["_meta_config_path"] = str(path)
    elif explicit:
        raise ConfigError(f"Config file not found: {path}")

    for env_name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            config[section][key] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from exc

    if not config["storage"].get("service_key"):
        config["storage"]["service_key"] = get_optional_secret("supabase-service-key")

    missing = [
        ".".join(keys) for keys in _REQUIRED if not config[keys[0]].get(keys[1])
    ]
    if missing:
        raise ConfigError(
            "Missing required settings: "
            + ", ".join(missing)
            + " (set SUPABASE_URL, SUPABASE_SERVICE_KEY and GROUP_JID)"
        )

    for section, key in _POSITIVE:
        value = config[section].get(key)
        try:
            ok = float(value) > 0
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise ConfigError(f"{section}.{key} must be a positive number, got {value!r}")

    # Only {name} and {url} are available to the notification template.
    template = config["relay"].get("message_template")
    try:
        str(template).format(name="file.pdf", url="https://example.invalid/file.pdf")
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigError(
            f"relay.message_template is invalid ({exc!r}); use only {{name}} and {{url}}"
        ) from exc

    config["storage"]["url"] = str(config["storage"]["url"]).rstrip("/")
    return config
