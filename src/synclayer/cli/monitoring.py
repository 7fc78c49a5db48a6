"""synclayer CLI - Monitoring Commands

Local sync state report. Nothing here talks to the backend.
"""
import json
from datetime import datetime, timezone

import click

# Local CLI imports
from .common import (
    echo_normal,
    echo_quiet,
    echo_verbose,
    open_client,
    run_async,
    VERBOSITY_NORMAL,
)


@click.group()
@click.pass_context
def monitoring_group(ctx):
    """Monitoring commands."""
    ctx.ensure_object(dict)


def _format_ms(value) -> str:
    if not value:
        return "never"
    stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return f"{value} ({stamp.isoformat(timespec='seconds')})"


@monitoring_group.command()
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
def status(ctx, as_json: bool) -> None:
    """Show configuration, device identity and pull cursors."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    client = open_client(ctx)
    try:
        info = client.status()
    finally:
        run_async(client.close())

    if as_json:
        echo_quiet(json.dumps(info, indent=2), verbosity)
        return

    echo_normal(click.style("synclayer Status", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    echo_normal(f"Backend:        {info['backend_url']}", verbosity)
    echo_normal(f"User:           {info['user_id']}", verbosity)
    echo_normal(f"Device:         {info['device_id']}", verbosity)
    echo_normal(f"Priority class: {info['priority_class']}", verbosity)
    echo_verbose(f"Priority order: {' < '.join(info['priority_order'])}", verbosity)
    echo_normal(f"Last push seen: {_format_ms(info['sticky_pull_at'])}", verbosity)
    echo_verbose(f"Cached ETags:   {info['cached_etags']}", verbosity)

    echo_normal("\nCursors:", verbosity)
    for table, since in info['cursors'].items():
        echo_normal(f"  {table:<24} {_format_ms(since)}", verbosity)
