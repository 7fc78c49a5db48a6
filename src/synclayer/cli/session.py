"""Setup commands for synclayer CLI."""
import click
import yaml

from ..config import CONFIG_FILENAME, DEFAULT_PRIORITY_ORDER, DEFAULT_TABLES
from ..device import get_device_id

# Local CLI imports
from .common import get_base_path, echo_normal, echo_quiet, fail


@click.group()
def session_group():
    """Setup commands."""
    pass


@session_group.command("init")
@click.option('--backend-url', default='', help='Backend or proxy origin (e.g. https://example.com/api/b)')
@click.option('--app-key', default=None, help='Application key sent as x-app-key')
@click.option('--user-id', default='demo', show_default=True, help='User whose data is synced')
@click.option('--priority-class', type=click.Choice(list(DEFAULT_PRIORITY_ORDER)), default='desktop',
              show_default=True, help='Device class used to break updated_at ties')
@click.option('--force', is_flag=True, help='Overwrite an existing config.yaml')
@click.pass_context
def init(ctx, backend_url: str, app_key: str, user_id: str, priority_class: str, force: bool) -> None:
    """Initialize sync state.

    Creates the following:
    - ~/.synclayer/ directory
    - config.yaml with a `sync` section
    - device_id for this installation
    """
    base_path = get_base_path(ctx.obj.get('data_dir'))
    verbosity = ctx.obj.get('verbosity', 1)
    config_path = base_path / CONFIG_FILENAME

    if config_path.exists() and not force:
        fail(f"Error: {config_path} already exists (use --force to overwrite)")

    echo_normal(click.style("Initializing synclayer...", fg="cyan", bold=True), verbosity)

    base_path.mkdir(parents=True, exist_ok=True)
    echo_normal(f" ✓ Created directory: {base_path}", verbosity)

    config_data = {
        'sync': {
            'backend_url': backend_url,
            'app_key': app_key,
            'user_id': user_id,
            'priority_class': priority_class,
            'priority_order': list(DEFAULT_PRIORITY_ORDER),
            'tables': list(DEFAULT_TABLES),
            'polling_interval_seconds': 30,
            'fallback_polling': True,
        }
    }
    config_path.write_text(yaml.dump(config_data, default_flow_style=False, sort_keys=False))
    echo_normal(f" ✓ Created config: {config_path}", verbosity)

    device_id = get_device_id(base_path)
    echo_normal(f" ✓ Device id: {device_id}", verbosity)

    if not backend_url:
        echo_quiet(click.style(
            "Set the backend before syncing: synclayer config set sync.backend_url <url>",
            fg="yellow",
        ), verbosity)
