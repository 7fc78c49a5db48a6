"""Configuration management commands for synclayer CLI."""
import click
import yaml

from ..config import CONFIG_FILENAME

# Local CLI imports
from .common import echo_quiet, echo_normal, fail, require_initialized


def _parse_value(value: str):
    """Interpret a command-line value as YAML (numbers, booleans, lists)."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


@click.group()
def config_group():
    """Configuration management commands."""
    pass


@config_group.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key: str, value: str) -> None:
    """Set a configuration value.

    Args:
        key: Configuration key (e.g., 'sync.backend_url')
        value: Value to set

    Examples:
        synclayer config set sync.backend_url https://example.com/api/b
        synclayer config set sync.polling_interval_seconds 15
        synclayer config set sync.priority_order "[desktop, mobile]"
    """
    base_path = require_initialized(ctx)
    config_path = base_path / CONFIG_FILENAME
    verbosity = ctx.obj.get('verbosity', 1)

    try:
        config_data = yaml.safe_load(config_path.read_text()) or {}

        # Parse nested keys (e.g., 'sync.backend_url')
        keys = key.split('.')
        current = config_data
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]

        current[keys[-1]] = _parse_value(value)

        config_path.write_text(yaml.dump(config_data, default_flow_style=False, sort_keys=False))
        echo_normal(click.style(f"✓ Set {key} = {value}", fg="green"), verbosity)
    except (OSError, yaml.YAMLError) as e:
        fail(f"Error: Failed to set config: {e}")


@config_group.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key: str) -> None:
    """Get a configuration value.

    Examples:
        synclayer config get sync.backend_url
    """
    base_path = require_initialized(ctx)
    config_path = base_path / CONFIG_FILENAME
    verbosity = ctx.obj.get('verbosity', 1)

    try:
        config_data = yaml.safe_load(config_path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        fail(f"Error: Failed to get config: {e}")

    current = config_data
    for k in key.split('.'):
        if not isinstance(current, dict) or k not in current:
            fail(f"Key '{key}' not found")
        current = current[k]

    if isinstance(current, (dict, list)):
        current = yaml.dump(current, default_flow_style=False).rstrip()
    echo_quiet(current, verbosity)


@config_group.command('show')
@click.pass_context
def config_show(ctx) -> None:
    """Display full configuration."""
    base_path = require_initialized(ctx)
    verbosity = ctx.obj.get('verbosity', 1)

    content = (base_path / CONFIG_FILENAME).read_text()
    echo_normal(click.style("Current configuration:", fg="cyan", bold=True), verbosity)
    echo_quiet(content, verbosity)
