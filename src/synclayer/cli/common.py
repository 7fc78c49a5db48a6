"""Shared utilities for synclayer CLI commands."""
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

import click

from ..client import SyncClient
from ..config import CONFIG_FILENAME, DEFAULT_BASE_PATH, SyncConfig, load_config

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

NOT_INITIALIZED = "Error: synclayer not initialized. Run 'synclayer init' first."


def get_base_path(ctx_data_dir: Optional[Path] = None) -> Path:
    """Get the base path for synclayer data.

    Priority: --data-dir flag > SYNCLAYER_BASE_PATH env var > default path.
    """
    if ctx_data_dir:
        return Path(ctx_data_dir)
    env_path = os.getenv("SYNCLAYER_BASE_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_BASE_PATH


def configure_logging(verbosity: int) -> None:
    """Route library logging to stderr at a level matching the verbosity flags."""
    level = {
        VERBOSITY_QUIET: logging.ERROR,
        VERBOSITY_NORMAL: logging.WARNING,
        VERBOSITY_VERBOSE: logging.DEBUG,
    }.get(verbosity, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("synclayer").setLevel(level)


def should_print(verbosity: int, message_level: int) -> bool:
    return verbosity >= message_level


def echo_verbose(message: Any, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message, err=False)


def echo_normal(message: Any, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message, err=False)


def echo_quiet(message: Any, verbosity: int) -> None:
    """Print a message that is shown even in quiet mode."""
    click.echo(message, err=False)


def fail(message: str) -> None:
    """Print an error to stderr and exit with status 1."""
    click.echo(click.style(message, fg="red"), err=True)
    sys.exit(1)


def require_initialized(ctx: click.Context) -> Path:
    base_path = get_base_path(ctx.obj.get('data_dir'))
    if not (base_path / CONFIG_FILENAME).exists():
        fail(NOT_INITIALIZED)
    return base_path


def load_cli_config(ctx: click.Context) -> SyncConfig:
    """Load and validate the configuration for the selected data directory."""
    base_path = require_initialized(ctx)
    try:
        config = load_config(base_path)
        config.base_path = base_path
        config.validate()
    except ValueError as e:
        fail(f"Error: Invalid configuration: {e}")
    return config


def open_client(ctx: click.Context, with_bus: bool = True) -> SyncClient:
    """Build a SyncClient; ctx.obj['http_transport'] overrides the network (tests)."""
    config = load_cli_config(ctx)
    return SyncClient.from_config(
        config,
        http_transport=ctx.obj.get('http_transport'),
        with_bus=with_bus,
    )


def run_async(coro):
    """Run a coroutine to completion from a synchronous command."""
    return asyncio.run(coro)
