"""synclayer CLI - multi-device sync from the command line

Command groups are organized into separate modules:
- session.py: init
- monitoring.py: status
- config.py: config set, get, show
- sync.py: pull, push, delete, watch, signal
- docs.py: doc get, put
- common.py: shared utilities
"""
from pathlib import Path
import click

from .. import __version__

# Local imports
from .common import get_base_path, configure_logging
from .session import session_group
from .monitoring import monitoring_group
from .config import config_group
from .sync import sync_group
from .docs import docs_group


@click.group()
@click.version_option(version=__version__, prog_name="synclayer")
@click.option('--data-dir', type=click.Path(), default=None, envvar='SYNCLAYER_BASE_PATH',
              help='Base directory for synclayer data (default: ~/.synclayer)')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, data_dir, verbose, quiet):
    """synclayer - keep rows and documents in sync across devices

    \b
    Key Commands:
        init              Create config.yaml and a device id
        status            Show cursors and device identity
        pull / push       One-shot row sync
        watch             Follow the live stream (with polling fallback)
        signal            Ask other surfaces to pull, push or reset
        doc get / put     Single-document store
        config            Configuration management

    \b
    Examples:
        synclayer init --backend-url https://example.com/api/b --app-key KEY
        synclayer pull --table checklist_sets
        synclayer push checklist_sets rows.json
        synclayer watch
        synclayer signal pull
    """
    from .common import VERBOSITY_QUIET, VERBOSITY_NORMAL, VERBOSITY_VERBOSE

    ctx.ensure_object(dict)

    # Validate mutually exclusive flags
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    configure_logging(ctx.obj['verbosity'])

    if data_dir:
        ctx.obj['data_dir'] = Path(data_dir)
    else:
        ctx.obj['data_dir'] = None


# Register setup command (init)
cli.add_command(session_group.commands['init'])

# Register monitoring command (status)
cli.add_command(monitoring_group.commands['status'])

# Register config command group (config set, get, show)
cli.add_command(config_group, name='config')

# Register row sync commands (pull, push, delete, watch, signal)
for name in ('pull', 'push', 'delete', 'watch', 'signal'):
    cli.add_command(sync_group.commands[name])

# Register document command group (doc get, put)
cli.add_command(docs_group, name='doc')


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    '__version__',
    'cli',
    'main',
    'get_base_path',
]
