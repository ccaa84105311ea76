"""Configuration loading for the Snipt bridge.

Configuration comes from an optional YAML file (with ``${VAR}``
substitution) overlaid with the environment variables the bridge
recognises. Environment variables win so a deployment can override a
checked-in file.
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml

from snipt_bridge.exceptions import ConfigError
from snipt_bridge.models import BridgeConfig

# Environment variable -> config field
ENV_VARS = {
    "SNIPT_API_KEY": "api_key",
    "SNIPT_API_URL": "api_url",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_ANON_KEY": "supabase_anon_key",
    "SUPABASE_SERVICE_ROLE_KEY": "supabase_service_role_key",
    "PORT": "port",
    "MCP_SERVER_URL": "server_url",
    "SNIPT_SESSION_SECRET": "session_secret",
}


def _substitute_env_vars(obj, environ: Mapping[str, str]):
    """Recursively substitute ${VAR} with environment variables."""
    if isinstance(obj, str):
        pattern = r"\$\{([^}]+)\}"
        return re.sub(pattern, lambda m: environ.get(m.group(1), m.group(0)), obj)
    elif isinstance(obj, dict):
        return {k: _substitute_env_vars(v, environ) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item, environ) for item in obj]
    return obj


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Load configuration from an optional YAML file and the environment."""
    if environ is None:
        environ = os.environ

    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data, environ)

    for var, field_name in ENV_VARS.items():
        value = environ.get(var)
        if value:
            data[field_name] = value

    return BridgeConfig(**data)


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    if not config.api_key and not config.supabase_url:
        errors.append(
            "Either SNIPT_API_KEY or SUPABASE_URL must be set "
            "(SNIPT_API_KEY for API key authentication, "
            "SUPABASE_URL for OAuth authentication)"
        )

    if config.supabase_url and not config.supabase_anon_key:
        errors.append("SUPABASE_ANON_KEY is required when SUPABASE_URL is set")

    if config.supabase_service_role_key and not config.supabase_url:
        errors.append("SUPABASE_SERVICE_ROLE_KEY requires SUPABASE_URL")

    if config.code_ttl <= 0:
        errors.append("code_ttl must be positive")

    return errors


def require_valid_config(config: BridgeConfig) -> BridgeConfig:
    """Return the config unchanged or raise ConfigError listing every problem."""
    errors = validate_config(config)
    if errors:
        raise ConfigError("; ".join(errors))
    return config
