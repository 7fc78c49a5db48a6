"""Document store commands for synclayer CLI."""
import json

import click

from ..errors import ConflictError, SyncError

# Local imports
from .common import echo_normal, echo_quiet, echo_verbose, fail, open_client, run_async


@click.group()
def docs_group():
    """Single-document store commands."""
    pass


@docs_group.command('get')
@click.argument('key')
@click.pass_context
def doc_get(ctx, key: str) -> None:
    """Print the document stored under KEY."""
    verbosity = ctx.obj.get('verbosity', 1)
    client = open_client(ctx, with_bus=False)

    async def _load():
        async with client:
            return await client.documents.load_document(key)

    try:
        document = run_async(_load())
    except SyncError as e:
        fail(f"Error: Failed to load {key}: {e}")

    if document is None:
        fail(f"Document '{key}' not found")

    echo_verbose(f"ETag: {document.etag}  updated_at: {document.updated_at}", verbosity)
    echo_quiet(json.dumps(document.data, indent=2, ensure_ascii=False), verbosity)


@docs_group.command('put')
@click.argument('key')
@click.argument('file', type=click.File('r'))
@click.pass_context
def doc_put(ctx, key: str, file) -> None:
    """Write the JSON in FILE ('-' for stdin) to the document KEY.

    Uses the cached ETag as a precondition and retries once on conflict.
    """
    verbosity = ctx.obj.get('verbosity', 1)
    try:
        data = json.load(file)
    except json.JSONDecodeError as e:
        fail(f"Error: {file.name} is not valid JSON: {e}")

    client = open_client(ctx, with_bus=False)

    async def _save():
        async with client:
            await client.documents.save(key, data)
            return client.documents.cached_etag(key)

    try:
        etag = run_async(_save())
    except ConflictError as e:
        fail(f"Error: Conflict saving {key}; another device wrote it concurrently ({e})")
    except SyncError as e:
        fail(f"Error: Failed to save {key}: {e}")

    echo_normal(click.style(f"✓ Saved {key}", fg="green"), verbosity)
    echo_verbose(f"  ETag: {etag}", verbosity)
