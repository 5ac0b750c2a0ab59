import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Optional, Tuple

import click
from tqdm import tqdm

from .auth.google_drive import GoogleDriveAuthProvider
from .config import (
    ConfigManager,
    EngineSettings,
    build_settings,
    config_to_dict,
    parse_skip_ids,
)
from .migration.engine import MigrationEngine, RecordOutcome, RunResult, StopReason
from .migration.state import StateStore, StoreSummary, reset_database
from .sources.google_drive import GoogleDriveClient
from .targets.s3_archive import S3ArchiveClient
from .utils.exceptions import ConfigurationError, MigratorError
from .utils.logger import setup_logging
from .utils.paths import format_bytes

logger = logging.getLogger(__name__)


@click.group()
@click.version_option()
def main() -> None:
    """Deep Freeze - migrate files from Google Drive to S3 Deep Archive."""


@main.command()
def config() -> None:
    """Create or update the configuration file."""
    mgr = ConfigManager()

    if mgr.exists():
        click.echo(f"Configuration file found: {mgr.config_path}")
        if not click.confirm("Overwrite existing configuration?", default=False):
            click.echo("Aborted.")
            return
        mgr.load()
    else:
        click.echo("No configuration file found. Creating a new one.")

    click.echo("\n--- Google Drive ---")
    mgr.get_or_prompt("google_drive.base_folder_id", "Folder ID to migrate")
    mgr.get_or_prompt(
        "google_drive.credentials_path", "Path to OAuth client secrets JSON"
    )
    mgr.get_or_prompt("google_drive.token_path", "Path to cached token JSON")
    mgr.get_or_prompt(
        "google_drive.service_account_path",
        "Path to service account key (blank to use OAuth)",
    )

    click.echo("\n--- Archive ---")
    mgr.get_or_prompt("archive.bucket", "S3 bucket name")
    mgr.get_or_prompt("archive.region", "AWS region")
    mgr.get_or_prompt("archive.storage_class", "Storage class")
    mgr.get_or_prompt("archive.key_prefix", "Key prefix (blank for bucket root)")

    click.echo("\n--- Migration ---")
    mgr.get_or_prompt("migration.db_path", "State database file")
    mgr.get_or_prompt("migration.temp_dir", "Staging directory")

    try:
        mgr.config.validate()
    except ConfigurationError as e:
        click.echo(f"\nValidation error: {e}", err=True)
        raise SystemExit(1)

    mgr.save()
    click.echo(f"\nConfiguration saved to {mgr.config_path}")


@main.command()
def show() -> None:
    """Print the current configuration."""
    mgr = ConfigManager()

    if not mgr.exists():
        click.echo(f"No configuration file found at {mgr.config_path}")
        click.echo("Run 'deep-freeze config' to create one.")
        raise SystemExit(1)

    try:
        cfg = mgr.load()
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Configuration file: {mgr.config_path}\n")
    click.echo(json.dumps(config_to_dict(cfg), indent=2))


def _load_config() -> ConfigManager:
    mgr = ConfigManager()
    if not mgr.exists():
        click.echo("No configuration found. Run 'deep-freeze config' first.")
        raise SystemExit(1)
    try:
        mgr.load()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)
    return mgr


def _local_paths(
    mgr: ConfigManager, db_file: Optional[str], temp_dir: Optional[str]
) -> Tuple[Path, Path]:
    db_path = Path(db_file or mgr.get("migration.db_path")).expanduser()
    staging = Path(temp_dir or mgr.get("migration.temp_dir")).expanduser()
    return db_path, staging


def _reset(db_path: Path, temp_dir: Path) -> None:
    click.echo("Resetting database and temp files")
    if reset_database(db_path):
        click.echo(f"  Deleted {db_path}")
    if temp_dir.exists():
        shutil.rmtree(temp_dir)
        click.echo(f"  Deleted {temp_dir}")
    click.echo("Reset complete")


def _connect_drive(
    mgr: ConfigManager, interactive: bool = True
) -> Tuple[GoogleDriveClient, GoogleDriveAuthProvider]:
    service_account = mgr.get("google_drive.service_account_path")
    auth_provider = GoogleDriveAuthProvider(
        credentials_path=Path(mgr.get("google_drive.credentials_path")).expanduser(),
        token_path=Path(mgr.get("google_drive.token_path")).expanduser(),
        service_account_path=(
            Path(service_account).expanduser() if service_account else None
        ),
        interactive=interactive,
    )

    click.echo("Authenticating with Google Drive...")
    credentials = auth_provider.authenticate()
    drive_client = GoogleDriveClient(credentials=credentials)
    drive_client.connect()
    return drive_client, auth_provider


def _connect_archive(mgr: ConfigManager, settings: EngineSettings) -> S3ArchiveClient:
    storage_client = S3ArchiveClient(
        bucket=settings.bucket,
        region=settings.region,
        storage_class=settings.storage_class,
        profile=mgr.get("archive.profile") or None,
    )
    storage_client.connect()
    return storage_client


def _run_with_progress(engine: MigrationEngine, silent: bool = False) -> RunResult:
    if silent:
        return asyncio.run(engine.run())

    files_bar = tqdm(desc="Files", unit="file", position=0)
    bytes_bar = tqdm(desc="Transfer", unit="B", unit_scale=True, position=1)

    def on_progress(source_path: str, outcome: RecordOutcome) -> None:
        files_bar.update(1)
        files_bar.set_postfix_str(f"{source_path}: {outcome.value}")

    engine.set_progress_callback(on_progress)
    engine.set_bytes_callback(bytes_bar.update)

    try:
        return asyncio.run(engine.run())
    finally:
        bytes_bar.close()
        files_bar.close()


def _print_summary(summary: StoreSummary) -> None:
    click.echo("\n--- Migration Summary ---")
    click.echo(f"  Total files:     {summary.total}")
    click.echo(f"  Migrated:        {summary.migrated}")
    click.echo(f"  Needs transfer:  {summary.needs_transfer}")
    click.echo(f"  Unverified:      {summary.unverified}")
    click.echo(f"  Skipped:         {summary.skipped}")
    click.echo(f"  Left to migrate: {format_bytes(summary.unmigrated_bytes)}")
    click.echo(f"  Progress:        {summary.percent_done}%")


def _print_result(result: RunResult) -> None:
    click.echo(f"\nFinished after {result.passes} pass(es): {result.stop_reason.value}")
    for outcome, count in sorted(result.outcomes.items()):
        if count:
            click.echo(f"  {outcome}: {count}")
    _print_summary(result.summary)


@main.command()
@click.option("--db-file", default=None, help="Path to the state database")
@click.option("--temp-dir", default=None, help="Directory for staged downloads")
@click.option(
    "--skip",
    "skip",
    multiple=True,
    help="Source file IDs to leave alone (comma separated, repeatable)",
)
@click.option("--reset", is_flag=True, help="Delete the database and temp files first")
@click.option(
    "--reset-only", is_flag=True, help="Delete the database and temp files, then exit"
)
@click.option(
    "--check-only", is_flag=True, help="Verify archive state without transferring"
)
@click.option("--concurrency", type=int, default=None, help="Files processed at once")
@click.option("--max-passes", type=int, default=None, help="Upper bound on passes")
@click.option("--silent", is_flag=True, help="Only print warnings and the summary")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write logs to this file",
)
def migrate(
    db_file: Optional[str],
    temp_dir: Optional[str],
    skip: Tuple[str, ...],
    reset: bool,
    reset_only: bool,
    check_only: bool,
    concurrency: Optional[int],
    max_passes: Optional[int],
    silent: bool,
    verbose: bool,
    log_file: Optional[Path],
) -> None:
    """Catalog the source folder and migrate every file to the archive."""
    setup_logging(level="DEBUG" if verbose else None, log_file=log_file, silent=silent)

    if reset or reset_only:
        _reset(*_local_paths(ConfigManager(), db_file, temp_dir))
        if reset_only:
            return

    mgr = _load_config()
    try:
        settings = build_settings(
            mgr.config,
            db_path=db_file,
            temp_dir=temp_dir,
            concurrency=concurrency,
            max_passes=max_passes,
            check_only=check_only,
            skip_ids=parse_skip_ids(skip),
        )
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)

    if settings.skip_ids:
        click.echo(f"Skipping: {', '.join(sorted(settings.skip_ids))}")
    if check_only:
        click.echo("\n[CHECK ONLY] Nothing will be downloaded or uploaded.\n")

    try:
        state = StateStore(settings.db_path)
        drive_client, auth_provider = _connect_drive(mgr)
        storage_client = _connect_archive(mgr, settings)
        engine = MigrationEngine(
            drive_client=drive_client,
            storage_client=storage_client,
            state=state,
            settings=settings,
            auth_provider=auth_provider,
        )

        catalog = engine.catalog()
        if not catalog.skipped_existing:
            click.echo(f"Cataloged {catalog.files_added} files")
            if catalog.renamed:
                click.echo(
                    f"{catalog.renamed} files share a path with another file "
                    "and were tagged with their id"
                )
        _print_summary(engine.get_summary())

        click.echo(f"\nMigrating to s3://{settings.bucket}...")
        result = _run_with_progress(engine, silent=silent)
    except MigratorError as e:
        click.echo(f"\nMigration failed: {e}", err=True)
        raise SystemExit(1)

    _print_result(result)

    if result.stop_reason == StopReason.CHECK_ONLY or result.completed:
        click.echo("\nAll files migrated" if result.completed else "\nCheck complete")
        return

    click.echo("\nSome files were not migrated", err=True)
    raise SystemExit(1)


@main.command()
@click.option("--db-file", default=None, help="Path to the state database")
def status(db_file: Optional[str]) -> None:
    """Show migration progress recorded in the state database."""
    mgr = ConfigManager()
    db_path, _ = _local_paths(mgr, db_file, None)
    if not db_path.exists():
        click.echo(f"No state database found at {db_path}")
        raise SystemExit(1)

    state = StateStore(db_path)
    _print_summary(state.get_summary())

    skipped = state.get_skipped_records()
    if skipped:
        click.echo("\nSkipped files:")
        for record in skipped:
            click.echo(f"  {record.source_id}  {record.source_path}")


@main.command()
@click.option("--db-file", default=None, help="Path to the state database")
@click.option(
    "--source-id",
    "source_ids",
    multiple=True,
    help="Only clear these IDs (repeatable, default: all)",
)
def unskip(db_file: Optional[str], source_ids: Tuple[str, ...]) -> None:
    """Make skipped files eligible for the next run again."""
    mgr = ConfigManager()
    db_path, _ = _local_paths(mgr, db_file, None)
    if not db_path.exists():
        click.echo(f"No state database found at {db_path}")
        raise SystemExit(1)

    state = StateStore(db_path)
    cleared = state.clear_skips(parse_skip_ids(source_ids) or None)
    click.echo(f"Cleared skip flag on {cleared} files")


@main.command(name="reset")
@click.option("--db-file", default=None, help="Path to the state database")
@click.option("--temp-dir", default=None, help="Directory for staged downloads")
@click.confirmation_option(prompt="Delete the state database and all staged files?")
def reset_command(db_file: Optional[str], temp_dir: Optional[str]) -> None:
    """Delete the state database and staging directory."""
    _reset(*_local_paths(ConfigManager(), db_file, temp_dir))


if __name__ == "__main__":
    main()
