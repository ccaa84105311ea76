"""CLI commands for snipt-bridge."""

import logging

import click
import yaml
from pydantic import ValidationError

from snipt_bridge.config import load_config, validate_config
from snipt_bridge.debug import configure_debug_logging, enable_debug


def config_option():
    """Decorator for --config option."""
    return click.option(
        "--config", "-c",
        default=None,
        type=click.Path(exists=False),
        help="Optional YAML config file (environment variables override it)",
    )


def _load_or_exit(config: str | None):
    try:
        return load_config(config)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except yaml.YAMLError as e:
        click.echo(f"Error: Invalid YAML in config file: {e}", err=True)
        raise SystemExit(1)
    except ValidationError as e:
        click.echo(f"Error: Invalid configuration: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable verbose logging")
def main(debug: bool):
    """Snipt MCP bridge CLI."""
    if debug:
        enable_debug()
        configure_debug_logging(logging.DEBUG)
    else:
        configure_debug_logging(logging.INFO)


@main.command()
@config_option()
def validate(config: str | None):
    """Validate configuration (file plus environment)."""
    cfg = _load_or_exit(config)
    errors = validate_config(cfg)
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        raise SystemExit(1)

    click.echo("Configuration is valid.")
    click.echo(f"  API key auth: {'enabled' if cfg.api_key_enabled else 'disabled'}")
    click.echo(f"  OAuth: {'enabled' if cfg.oauth_enabled else 'disabled'}")
    click.echo(f"  Public URL: {cfg.public_url}")


@main.command()
@config_option()
@click.option("--transport", "-t", default="http", type=click.Choice(["http", "stdio"]), help="Transport type")
@click.option("--port", "-p", default=None, type=int, help="Port for HTTP transport (default: PORT or 3001)")
@click.option("--env-file", "-e", default=".env", type=click.Path(), help="Path to .env file (default: .env)")
def serve(config: str | None, transport: str, port: int | None, env_file: str):
    """Start the bridge server."""
    from dotenv import load_dotenv

    from snipt_bridge.exceptions import ConfigError
    from snipt_bridge.server import SniptBridge

    # Load environment variables from .env file
    load_dotenv(env_file)

    cfg = _load_or_exit(config)
    try:
        bridge = SniptBridge(cfg)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    bridge.run(transport=transport, port=port)


@main.command("hash-key")
@click.argument("key")
def hash_key(key: str):
    """Print the bcrypt hash of an API key for a static key record."""
    from snipt_bridge.auth import hash_api_key

    click.echo(hash_api_key(key))
