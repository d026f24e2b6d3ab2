"""
pgwr - PostgreSQL Workload Replay

    pgwr sessions postgresql.log
    pgwr capture postgresql.log --database bench --user bench
    pgwr replay postgresql --database bench --user bench
"""
import logging
from typing import Any, Dict

import click
import psycopg2

from pgwr import __version__
from pgwr.capture import capture_profile, default_profile
from pgwr.catalog import PostgresCatalog, TypeResolver
from pgwr.config import DatabaseConfig, load_config
from pgwr.errors import ReplayError
from pgwr.replay import ReplayCoordinator, ReplayReport, load_clients, write_results_csv
from pgwr.streams import load_streams, summarize_sessions

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
BANNER_WIDTH = 70


def banner(title: str, **rows):
    click.echo("=" * BANNER_WIDTH)
    click.echo(title)
    click.echo("=" * BANNER_WIDTH)
    for label, value in rows.items():
        click.echo(f"{label.replace('_', ' ').capitalize() + ':':<17}{value}")
    if rows:
        click.echo("=" * BANNER_WIDTH)
    click.echo()


def database_options(f):
    """Connection options shared by capture and replay."""
    options = [
        click.option("--host", help="Database host (default: localhost)"),
        click.option("--port", type=int, help="Database port (default: 5432)"),
        click.option("--database", "-d", help="Database name"),
        click.option("--user", "-U", help="Database user"),
        click.option("--password", help="Database password"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def resolve_config(ctx: click.Context, settings: Dict[str, Any]) -> DatabaseConfig:
    try:
        return load_config(ctx.obj.get("config_path"), overrides=settings)
    except ReplayError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="WARNING",
              show_default=True, help="Logging level for diagnostics")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="YAML file with connection settings")
@click.version_option(__version__, prog_name="pgwr")
@click.pass_context
def cli(ctx, log_level, config_path):
    """PostgreSQL Workload Replay - capture a server log and replay it concurrently."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False))
def sessions(log_file):
    """List the connections found in a server log."""
    click.echo(f"Scanning {log_file} for client sessions...")
    try:
        captured = load_streams(log_file, keep_raw=False)
    except ReplayError as e:
        raise click.ClickException(str(e)) from e

    summary = summarize_sessions(captured)
    if not summary:
        click.echo("No client sessions found in log file.")
        return

    click.echo(f"\nFound {len(summary)} connection(s):")
    for connection_id, counts in summary.items():
        click.echo(f"  - Connection {connection_id}: {counts['entries']} entries, "
                   f"{counts['executes']} statements ({counts['prepared']} prepared)")
    click.echo("\nTo capture a replay profile, use:")
    click.echo(f"  pgwr capture {log_file} --database <db> --user <user>")


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--profile", type=click.Path(file_okay=False),
              help="Profile directory (default: log file name without extension)")
@click.option("--skip", type=click.IntRange(min=0), default=0, show_default=True,
              help="Skip the first N statements of every connection")
@click.option("--max-statements", type=click.IntRange(min=1),
              help="Keep at most N statements per connection")
@click.option("--raw/--no-raw", "keep_raw", default=True, show_default=True,
              help="Write each connection's original log lines to <profile>/raw")
@database_options
@click.pass_context
def capture(ctx, log_file, profile, skip, max_statements, keep_raw, **settings):
    """Build a replay profile from a server log."""
    config = resolve_config(ctx, settings)
    profile = profile or default_profile(log_file)

    banner("PostgreSQL Workload Capture", log_file=log_file, profile=profile, catalog=config)

    try:
        conn = config.connect()
    except psycopg2.Error as e:
        raise click.ClickException(f"Failed to connect to {config}: {e}") from e

    try:
        resolver = TypeResolver(PostgresCatalog(conn))
        result = capture_profile(log_file, resolver, profile=profile, skip=skip,
                                 max_statements=max_statements, keep_raw=keep_raw)
    except ReplayError as e:
        raise click.ClickException(str(e)) from e
    finally:
        conn.close()

    click.echo(f"Captured {len(result.statements)} connection(s), {result.total_statements} statements:")
    for connection_id, count in sorted(result.statements.items()):
        click.echo(f"  - Connection {connection_id}: {count} statements")
    if result.diagnostics:
        click.echo(f"\n{len(result.diagnostics)} parameter type diagnostic(s); "
                   "unresolved parameters are replayed as text.")
    click.echo(f"\nTo replay, use:\n  pgwr replay {profile} --database <db> --user <user>")


def print_report(report: ReplayReport):
    click.echo(f"Clock: {report.clock_ms:.0f}ms")
    click.echo(f"  Number of clients: {len(report.results)}")
    click.echo(f"  Statements: {report.statements}")
    for r in report.results:
        if r.success:
            click.echo(f"  {r.identifier}: {r.run_time_ms:.0f}/{r.connection_time_ms:.0f}")
        else:
            click.echo(f"  {r.identifier}: FAILED after {r.executed}/{r.statements} statements: {r.error}")
    if report.timed_out:
        click.echo("Replay timed out.")
    click.echo(f"Failed clients: {report.failed}")


@cli.command()
@click.argument("profile", type=click.Path(exists=True, file_okay=False))
@click.option("--sequential", "-s", is_flag=True, help="Run the clients one after another")
@click.option("--fetch-results", "-r", is_flag=True, help="Fetch every row of each result set")
@click.option("--xa", "-x", is_flag=True, help="Run transactions as two-phase (prepared) transactions")
@click.option("--timeout", type=click.FloatRange(min=0), help="Give up after this many seconds")
@click.option("--dry-run", is_flag=True, help="Show the statements without connecting")
@database_options
@click.pass_context
def replay(ctx, profile, sequential, fetch_results, xa, timeout, dry_run, **settings):
    """Replay a captured profile against a database."""
    try:
        clients = load_clients(profile)
    except ReplayError as e:
        raise click.ClickException(str(e)) from e
    if not clients:
        raise click.ClickException(f"No interaction files found in {profile}")

    if dry_run:
        click.echo("\n[DRY RUN MODE - Not connecting to database]\n")
        for client in clients:
            click.echo(f"Client {client.identifier}: {len(client.statements)} statements")
            for i, st in enumerate(client.statements, 1):
                values = f"  {st.parameters}" if st.parameters else ""
                click.echo(f"  {i}. {st.statement}{values}")
        return

    config = resolve_config(ctx, settings)
    banner("PostgreSQL Workload Replay", profile=profile, target=config, clients=len(clients),
           mode="sequential" if sequential else "concurrent",
           transactions="two-phase" if xa else "local")

    report = ReplayCoordinator(clients, config.connect, timeout=timeout, sequential=sequential,
                               fetch_results=fetch_results, xa=xa).run()
    print_report(report)
    write_results_csv(profile, report)

    if report.failed or report.timed_out:
        ctx.exit(1)
