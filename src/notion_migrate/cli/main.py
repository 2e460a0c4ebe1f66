"""Main CLI entry point for the Notion migration tool."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table

from .. import __version__
from ..api.exceptions import ValidationError
from ..config.config import Config
from ..migration.engine import MigrationEngine
from ..migration.orchestrator import MigrationReport, RunOptions, build_options
from ..models.entry import EntryStatus
from ..state.store import JSONFileStateStore
from ..utils.logging import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name='notion-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """Notion Migration Tool - Migrate pages into a Notion database with AI enrichment."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    # Basic logging until the config file is read
    log_level = 'DEBUG' if verbose else 'INFO'
    setup_logging(log_level)


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]Notion Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your Notion and AI provider details[/yellow]'
        )

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.option('--verify-only', is_flag=True, help='Report what would happen, change nothing')
@click.option('--dry-run', is_flag=True, help='Run without writing anywhere')
@click.option('--limit', type=int, help='Maximum number of entries to process')
@click.option('--single-entry', help='Process only this entry id')
@click.option('--skip-images', is_flag=True, help='Do not generate images')
@click.option('--skip-summaries', is_flag=True, help='Do not call the AI provider')
@click.option('--force-update', is_flag=True, help='Redo entries that already finished')
@click.option('--reset-pending', is_flag=True, help='Reset unfinished entries to pending')
@click.option('--batch-size', type=int, help='Entries per window')
@click.option('--concurrency', type=int, help='Entries processed in parallel')
@click.option('--delay', type=int, help='Pause between windows in milliseconds')
@click.pass_context
def migrate(
    ctx: click.Context,
    verify_only: bool,
    dry_run: bool,
    limit: Optional[int],
    single_entry: Optional[str],
    skip_images: bool,
    skip_summaries: bool,
    force_update: bool,
    reset_pending: bool,
    batch_size: Optional[int],
    concurrency: Optional[int],
    delay: Optional[int],
) -> None:
    """Start the migration process."""
    console.print(
        Panel.fit(
            '[bold blue]Notion Migration Tool[/bold blue]\n'
            'Starting migration process...',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        migration = config.migration
        options = build_options(
            verify_only=verify_only,
            dry_run=dry_run or migration.dry_run,
            limit=limit,
            single_entry=single_entry,
            skip_images=skip_images,
            skip_summaries=skip_summaries,
            force_update=force_update,
            reset_pending=reset_pending,
            batch_size=batch_size or migration.batch_size,
            concurrency=concurrency or migration.max_workers,
            batch_delay_ms=delay if delay is not None else migration.batch_delay_ms,
        )

        if options.dry_run:
            console.print(
                '[yellow]Running in dry-run mode - no changes will be made[/yellow]'
            )
        if options.skip_summaries:
            config.migration.generate_summaries = False
        if options.skip_images:
            config.migration.generate_images = False

        engine = MigrationEngine(config)

    except (ValidationError, PydanticValidationError, FileNotFoundError) as e:
        console.print(f'[red]✗[/red] Invalid configuration: {e}')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]✗[/red] Migration failed to start: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    try:
        report = asyncio.run(_run_migration(engine, options))
    except Exception as e:
        console.print(f'[red]✗[/red] Migration failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    _display_migration_report(report)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration and connectivity."""
    console.print(
        Panel.fit(
            '[bold cyan]Notion Migration Tool[/bold cyan]\nValidating setup...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        console.print('[green]✓[/green] Configuration validation completed')

        engine = MigrationEngine(config)
        engine._test_connectivity()

        console.print('[green]✓[/green] Connectivity validation passed')

    except Exception as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--failures', default=5, help='Number of recent failures to show')
@click.pass_context
def status(ctx: click.Context, failures: int) -> None:
    """Show migration progress recorded in the state file."""
    console.print(
        Panel.fit(
            '[bold magenta]Notion Migration Tool[/bold magenta]\nMigration Status',
            border_style='magenta',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        store = JSONFileStateStore(config.migration.state_file)
        state = store.load()
        counts = store.summary()

        table = Table(title=f'Ledger {config.migration.state_file}')
        table.add_column('Status', style='cyan')
        table.add_column('Entries', style='green')
        for status_value, count in counts.items():
            table.add_row(status_value, str(count))
        table.add_row('total', str(sum(counts.values())))
        console.print(table)

        if state.last_run_at:
            console.print(f'[blue]Last run:[/blue] {state.last_run_at}')

        failed = [
            entry for entry in store.entries() if entry.status == EntryStatus.FAILED
        ]
        failed.sort(
            key=lambda entry: entry.timestamps.get('failed') or entry.timestamps.get('updated'),
            reverse=True,
        )
        if failed:
            console.print(f'\n[red]Failed entries ({len(failed)}):[/red]')
            for entry in failed[:failures]:
                console.print(f'  • {entry.id}: {entry.last_error}')
            if len(failed) > failures:
                console.print(f'  ... and {len(failed) - failures} more')

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load status: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        if not Path(config_path).exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')
        return Config.from_file(config_path)

    default_paths = ['config.yaml', 'config.yml', '.notion-migrate.yaml']
    for path in default_paths:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except PydanticValidationError:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run '
            '"notion-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    verbose = ctx.obj.get('verbose', False)

    # Verbose flag overrides the configured level
    log_level = 'DEBUG' if verbose else config.logging.level
    setup_logging(
        level=log_level,
        log_file=config.logging.file,
        log_format=config.logging.format,
        json_file=config.logging.serialize,
        secrets=[config.notion.token, config.ai.api_key, config.ai.image_api_key],
        library_level=config.logging.library_level,
    )


def _interrupt_handler(engine: MigrationEngine, loop: asyncio.AbstractEventLoop):
    """First Ctrl-C asks for a clean stop, a second one interrupts at once."""

    def handle() -> None:
        engine.request_abort()
        console.print(
            '\n[yellow]Stopping at the next checkpoint, press Ctrl-C again to quit now[/yellow]'
        )
        # Back to the default handler, which raises KeyboardInterrupt
        loop.remove_signal_handler(signal.SIGINT)

    return handle


async def _run_migration(engine: MigrationEngine, options: RunOptions) -> MigrationReport:
    """Run the migration with a progress bar; Ctrl-C stops at the next checkpoint."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _interrupt_handler(engine, loop))
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl-C raises instead
        pass

    label = {'verify': 'Verification', 'dry_run': 'Dry run'}.get(options.mode, 'Migration')

    with Progress(
        SpinnerColumn(),
        TextColumn('[progress.description]{task.description}'),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(f'[blue]{label} starting...', total=None)

        def update_progress(done: int, total: int, outcome) -> None:
            progress.update(
                task,
                completed=done,
                total=total,
                description=f'[blue]{label}: {outcome.entry_id} {outcome.status.value}',
            )

        try:
            report = await engine.migrate(options, update_progress)
        except Exception as e:
            progress.update(task, description=f'[red]Failed: {e}')
            raise
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

        progress.update(task, description=f'[green]{label} completed')

    if report.aborted:
        console.print('[yellow]Run aborted; progress is saved and will resume[/yellow]')
    else:
        console.print(f'[green]✓[/green] {label} completed')
    return report


def _display_migration_report(report: MigrationReport) -> None:
    """Display migration report."""
    table = Table(title='Migration Summary')
    table.add_column('Mode', style='cyan')
    table.add_column('Total', style='blue')
    table.add_column('Completed', style='green')
    table.add_column('Failed', style='red')
    table.add_column('Skipped', style='yellow')
    table.add_row(
        report.mode,
        str(report.total),
        str(report.completed),
        str(report.failed),
        str(report.skipped),
    )
    console.print(table)

    if report.completed_at:
        duration = report.completed_at - report.started_at
        console.print(f'\n[blue]Migration Duration:[/blue] {duration}')

    if report.verification:
        for item in report.verification[:20]:
            detail = f' ({item.detail})' if item.detail else ''
            console.print(f'  • {item.entry_id}: {item.status}{detail}')

    if report.intended_actions:
        console.print(f'\n[yellow]Intended actions ({len(report.intended_actions)}):[/yellow]')
        for action in report.intended_actions[:10]:
            console.print(f'  • {action}')
        if len(report.intended_actions) > 10:
            console.print(f'  ... and {len(report.intended_actions) - 10} more')

    if report.failures:
        console.print(f'\n[red]Errors ({len(report.failures)}):[/red]')
        for failure in report.failures[:5]:
            stage = f' [{failure.stage}]' if failure.stage else ''
            console.print(f'  • {failure.entry_id}{stage}: {failure.reason}')
        if len(report.failures) > 5:
            console.print(f'  ... and {len(report.failures) - 5} more errors')


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Migration interrupted by user[/red]')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]Error: {e}[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
