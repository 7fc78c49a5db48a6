"""Row sync commands for synclayer CLI."""
import asyncio
import json
import logging
from typing import Dict, Tuple

import click

from ..bus import SyncBus, register_manual_sync
from ..device import get_device_id
from ..errors import SyncError
from ..events import EVENT_TYPES
from ..rows import Row

# Local imports
from .common import (
    echo_normal,
    echo_quiet,
    echo_verbose,
    fail,
    load_cli_config,
    open_client,
    run_async,
)

logger = logging.getLogger(__name__)


@click.group()
@click.pass_context
def sync_group(ctx):
    """Row synchronization commands.

    Pull and push rows, watch the live stream, and signal other surfaces
    on this device.
    """
    pass


def _row_line(row: Row) -> str:
    state = click.style("deleted", fg="red") if row.is_tombstone else click.style("live", fg="green")
    refs = " ".join(f"{k}={v}" for k, v in sorted(row.refs.items()))
    data = json.dumps(row.data_dict(), ensure_ascii=False, sort_keys=True)
    parts = [f"{row.table}/{row.id}", state, f"updated_at={row.updated_at}", f"by={row.updated_by}"]
    if refs:
        parts.append(refs)
    parts.append(data)
    return "  ".join(parts)


def _parse_refs(refs: Tuple[str, ...]) -> Dict[str, str]:
    parsed = {}
    for ref in refs:
        key, sep, value = ref.partition("=")
        if not sep or not key or not value:
            raise click.BadParameter(f"expected key=value, got {ref!r}", param_hint="--ref")
        parsed[key] = value
    return parsed


@sync_group.command('pull')
@click.option('--table', 'tables', multiple=True, help='Table to pull (repeatable; default: all configured)')
@click.option('--since', type=int, default=None, help='Override the stored cursor (ms)')
@click.option('--json', 'as_json', is_flag=True, help='Output the pull envelope as JSON')
@click.pass_context
def pull(ctx, tables, since, as_json):
    """Pull changed rows once and advance the cursors."""
    verbosity = ctx.obj.get('verbosity', 1)
    client = open_client(ctx)
    store = client.new_store()

    async def _pull():
        async with client:
            return await client.pull_all(store.apply_diffs, tables=tables or None, since=since)

    try:
        result = run_async(_pull())
    except (SyncError, ValueError) as e:
        fail(f"Error: Pull failed: {e}")

    if as_json:
        echo_quiet(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), verbosity)
        return

    echo_normal(f"Pulled {result.total} rows (server time {result.server_time_ms})", verbosity)
    for table in sorted(result.diffs):
        for row in store.all_rows(table):
            echo_normal(_row_line(row), verbosity)


@sync_group.command('push')
@click.argument('table')
@click.argument('file', type=click.File('r'))
@click.pass_context
def push(ctx, table, file):
    """Push rows of TABLE from a JSON FILE ('-' for stdin).

    FILE holds a list of rows, a single row, or {"rows": [...]}; each row is
    {"id", "data": {...}, "set_id"?, "action_id"?, "deleted_at"?}.
    updated_at, updated_by and priority_class are filled in when absent.
    """
    verbosity = ctx.obj.get('verbosity', 1)
    try:
        payload = json.load(file)
    except json.JSONDecodeError as e:
        fail(f"Error: {file.name} is not valid JSON: {e}")

    if isinstance(payload, dict):
        payload = payload["rows"] if "rows" in payload else [payload]
    if not isinstance(payload, list):
        fail("Error: Expected a JSON list of rows")

    client = open_client(ctx)

    async def _push():
        async with client:
            return await client.rows.push_rows(client.user_id, client.device_id, table, payload)

    try:
        result = run_async(_push())
    except (SyncError, ValueError, TypeError) as e:
        fail(f"Error: Push failed: {e}")

    echo_normal(click.style(f"✓ Pushed {result.total} rows to {table}", fg="green"), verbosity)
    echo_verbose(f"  Device: {client.device_id}", verbosity)


@sync_group.command('delete')
@click.argument('table')
@click.argument('row_id')
@click.option('--ref', 'refs', multiple=True, help='Foreign key as key=value (e.g. set_id=s1)')
@click.pass_context
def delete(ctx, table, row_id, refs):
    """Push a tombstone for one row."""
    verbosity = ctx.obj.get('verbosity', 1)
    ref_map = _parse_refs(refs)
    client = open_client(ctx)

    async def _delete():
        async with client:
            return await client.rows.delete(client.user_id, client.device_id, table, row_id, refs=ref_map)

    try:
        row = run_async(_delete())
    except (SyncError, ValueError) as e:
        fail(f"Error: Delete failed: {e}")

    echo_normal(click.style(f"✓ Deleted {table}/{row_id} at {row.deleted_at}", fg="green"), verbosity)


@sync_group.command('watch')
@click.option('--table', 'tables', multiple=True, help='Table to watch (repeatable; default: all configured)')
@click.option('--no-polling', is_flag=True, help='Disable the polling loop (stream only)')
@click.option('--no-stream', is_flag=True, help='Disable the event stream (polling only)')
@click.pass_context
def watch(ctx, tables, no_polling, no_stream):
    """Follow live changes until interrupted.

    Also answers pull and reset intents sent with `synclayer signal`.
    """
    verbosity = ctx.obj.get('verbosity', 1)
    if no_polling and no_stream:
        raise click.UsageError("--no-polling and --no-stream are mutually exclusive")

    client = open_client(ctx)
    store = client.new_store()

    def apply(diffs):
        result = store.apply_diffs(diffs)
        for row in result.applied:
            echo_normal(_row_line(row), verbosity)

    async def _watch():
        loop = asyncio.get_running_loop()
        async with client:
            smart = client.smart_sync(
                apply,
                tables=tables or None,
                stream=not no_stream,
                fallback_polling=not no_polling,
            )

            async def on_pull():
                try:
                    await client.pull_all(apply, tables=smart.tables)
                except SyncError as e:
                    logger.warning(f"Pull requested over the bus failed: {e}")

            def on_push():
                logger.debug("Push intent received; watch has nothing to push")

            def on_reset():
                client.reset()
                store.clear()
                echo_normal(click.style("Local sync state reset", fg="yellow"), verbosity)

            dispose = register_manual_sync(client.bus, pull=on_pull, push=on_push, reset=on_reset, loop=loop)
            echo_normal(click.style(f"Watching {', '.join(smart.tables)} (Ctrl+C to stop)", fg="cyan"), verbosity)
            await smart.start()
            try:
                await smart.wait()
            finally:
                dispose()
                await smart.stop()

    try:
        run_async(_watch())
    except KeyboardInterrupt:
        echo_normal("\nStopped", verbosity)


@sync_group.command('signal')
@click.argument('intent', type=click.Choice([t.split('.', 1)[1] for t in EVENT_TYPES]))
@click.pass_context
def signal(ctx, intent):
    """Ask every surface on this device to pull, push or reset."""
    verbosity = ctx.obj.get('verbosity', 1)
    config = load_cli_config(ctx)
    device_id = config.device_id or get_device_id(config.base_path)

    with SyncBus.from_config(config) as bus:
        emitted = bus.emit(f"sync.{intent}", config.user_id, device_id)

    echo_normal(click.style(f"✓ Sent {intent} intent", fg="green"), verbosity)
    echo_verbose(f"  Nonce: {emitted.nonce}", verbosity)
