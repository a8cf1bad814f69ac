"""CLI entry point for DatRain.

Commands:
    datrain cache    - run the secure download cache pipeline
    datrain status   - cache size and recent gate activity
    datrain audit    - print recent audit records
    datrain protect  - restrict a file or directory to the current user
"""

import asyncio
import logging
import shutil
import signal
import sqlite3
import sys
from pathlib import Path

import click

from datrain.config import (
    AUDIT_BUFFER_SIZE,
    AUDIT_LOG_PATH,
    CACHE_DIR,
    FILE_PATTERNS,
    INBOUND_DIR,
    MAX_WORKERS,
    POLL_INTERVAL,
    PRIVACY_COMMAND,
    PRIVACY_ENABLED,
    QUARANTINE_DIR,
    SCANNER_PATH,
    SCANNER_TIMEOUT,
    STABILITY_DELAY,
)
from datrain.errors import ConfigError
from datrain.schemas.intake import GateOutcome

logger = logging.getLogger("datrain")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """DatRain - scanner-gated download cache."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# datrain cache
# ------------------------------------------------------------------


def _validate_cache_config(
    inbound_dir: str, cache_dir: str, scanner: str, quarantine_dir: str
) -> None:
    """Raise ConfigError if the pipeline cannot start."""
    if not inbound_dir:
        raise ConfigError("--inbound-dir is required (or set DATRAIN_INBOUND_DIR).")
    if not Path(inbound_dir).expanduser().is_dir():
        raise ConfigError(f"Inbound directory does not exist: {inbound_dir}")
    if not cache_dir:
        raise ConfigError("--cache-dir is required (or set DATRAIN_CACHE_DIR).")
    if Path(cache_dir).expanduser().resolve() == Path(inbound_dir).expanduser().resolve():
        raise ConfigError("Cache directory must differ from the inbound directory.")
    if not scanner:
        raise ConfigError("--scanner is required (or set DATRAIN_SCANNER_PATH).")
    if not Path(scanner).is_file() and shutil.which(scanner) is None:
        raise ConfigError(f"Scanner executable not found: {scanner}")
    if quarantine_dir and Path(quarantine_dir).expanduser().resolve() == Path(
        inbound_dir
    ).expanduser().resolve():
        raise ConfigError("Quarantine directory must differ from the inbound directory.")


@cli.command()
@click.option("--inbound-dir", default=INBOUND_DIR, show_default=True, help="Directory to watch for downloads.")
@click.option("--cache-dir", default=CACHE_DIR, show_default=True, help="Protected cache directory (created if absent).")
@click.option("--scanner", default=SCANNER_PATH, show_default=True, help="Scanner executable, called as '<scanner> <file>'.")
@click.option("--timeout", default=SCANNER_TIMEOUT, show_default=True, type=float, help="Scanner timeout in seconds.")
@click.option("--interval", default=POLL_INTERVAL, show_default=True, type=float, help="Seconds between ticks.")
@click.option(
    "--stability-delay",
    default=STABILITY_DELAY,
    show_default=True,
    type=float,
    help="Seconds between the two size checks before scanning.",
)
@click.option("--workers", default=MAX_WORKERS, show_default=True, type=click.IntRange(min=1), help="Max files gated at once.")
@click.option(
    "--patterns",
    default=FILE_PATTERNS,
    show_default=True,
    help="Comma-separated file patterns to consider (e.g. '*.pdf,*.zip').",
)
@click.option("--quarantine-dir", default=QUARANTINE_DIR, help="Move rejected files here instead of leaving them.")
@click.option(
    "--privacy/--no-privacy",
    default=PRIVACY_ENABLED,
    show_default=True,
    help="Restrict cached files to the current user.",
)
@click.option("--privacy-command", default=PRIVACY_COMMAND, help="External ACL tool, called as '<tool> <path>'.")
@click.option("--audit-log", default=AUDIT_LOG_PATH, show_default=True, help="JSONL audit log path.")
@click.option("--once", is_flag=True, help="Run a single tick and exit.")
def cache(
    inbound_dir: str,
    cache_dir: str,
    scanner: str,
    timeout: float,
    interval: float,
    stability_delay: float,
    workers: int,
    patterns: str,
    quarantine_dir: str,
    privacy: bool,
    privacy_command: str,
    audit_log: str,
    once: bool,
) -> None:
    """Scan new downloads and cache the ones the scanner accepts."""
    try:
        _validate_cache_config(inbound_dir, cache_dir, scanner, quarantine_dir)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    try:
        asyncio.run(
            _cache_async(
                inbound_dir=inbound_dir,
                cache_dir=cache_dir,
                scanner_path=scanner,
                timeout=timeout,
                interval=interval,
                stability_delay=stability_delay,
                workers=workers,
                patterns=patterns,
                quarantine_dir=quarantine_dir,
                privacy=privacy,
                privacy_command=privacy_command,
                audit_log_path=audit_log,
                once=once,
            )
        )
    except (OSError, sqlite3.Error) as exc:
        logger.exception("Fatal I/O error")
        click.echo(f"Error: Fatal I/O error: {exc}", err=True)
        sys.exit(1)


async def _cache_async(
    *,
    inbound_dir: str,
    cache_dir: str,
    scanner_path: str,
    timeout: float,
    interval: float,
    stability_delay: float,
    workers: int,
    patterns: str,
    quarantine_dir: str,
    privacy: bool,
    privacy_command: str,
    audit_log_path: str,
    once: bool,
) -> None:
    from datrain.intake.audit import AuditLog
    from datrain.intake.cache_store import CacheStore
    from datrain.intake.gate import DecisionGate
    from datrain.intake.privacy import build_enforcer
    from datrain.intake.scanner import SubprocessScanner
    from datrain.intake.scheduler import IntakeScheduler

    file_patterns = [p.strip() for p in patterns.split(",") if p.strip()]
    enforcer = build_enforcer(privacy_command or None, enabled=privacy)

    with (
        CacheStore(cache_dir) as cache_store,
        AuditLog(audit_log_path, buffer_size=AUDIT_BUFFER_SIZE) as audit,
    ):
        if not enforcer.protect(cache_store.cache_dir):
            click.echo(f"Warning: could not restrict access to {cache_store.cache_dir}", err=True)

        gate = DecisionGate(
            scanner=SubprocessScanner(scanner_path, timeout=timeout),
            cache=cache_store,
            audit_log=audit,
            enforcer=enforcer,
            stability_delay=stability_delay,
            quarantine_dir=Path(quarantine_dir).expanduser() if quarantine_dir else None,
        )
        scheduler = IntakeScheduler(
            inbound_dir,
            gate=gate,
            cache=cache_store,
            file_patterns=file_patterns,
            max_workers=workers,
            poll_interval=interval,
            use_observer=not once,
        )

        if once:
            click.echo(f"Scanning {scheduler.inbound_dir} (once mode)…")
            report = await scheduler.run_tick()
            failed = report.count(GateOutcome.COMMIT_FAILED) + report.count(GateOutcome.ERROR)
            click.echo(
                f"Done. Files: {report.candidates}, "
                f"Cached: {report.count(GateOutcome.ACCEPTED_COMMITTED)}, "
                f"Rejected: {report.count(GateOutcome.REJECTED_LOGGED)}, "
                f"Deferred: {report.count(GateOutcome.DEFERRED)}, "
                f"Failed: {failed}"
            )
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop.set)
                except NotImplementedError:
                    pass  # Windows: Ctrl+C still raises KeyboardInterrupt
            click.echo(f"Watching {scheduler.inbound_dir} (Ctrl+C to stop)…")
            click.echo(f"  Cache: {cache_store.cache_dir}")
            click.echo(f"  Scanner: {scanner_path} (timeout {timeout:g}s)")
            click.echo(f"  Patterns: {file_patterns}")
            await scheduler.run_forever(stop)

        if audit.dropped_count:
            click.echo(f"Warning: {audit.dropped_count} audit record(s) dropped.", err=True)


# ------------------------------------------------------------------
# datrain status
# ------------------------------------------------------------------


@cli.command()
@click.option("--cache-dir", default=CACHE_DIR, show_default=True, help="Protected cache directory.")
@click.option("--audit-log", default=AUDIT_LOG_PATH, show_default=True, help="JSONL audit log path.")
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
def status(cache_dir: str, audit_log: str, hours: int) -> None:
    """Quick overview of the cache and recent gate decisions."""
    from datetime import UTC, datetime, timedelta

    from datrain.intake.audit import read_audit_file
    from datrain.intake.cache_store import CacheStore

    cached = 0
    if Path(cache_dir).expanduser().is_dir():
        with CacheStore(cache_dir) as cache_store:
            cached = cache_store.count()

    since = datetime.now(UTC) - timedelta(hours=hours)
    entries = read_audit_file(audit_log, since=since)

    def _n(outcome: GateOutcome) -> int:
        return sum(1 for e in entries if e.outcome == outcome)

    click.echo("DatRain Status")
    click.echo(f"  Cached files:       {cached}")
    click.echo(f"  Accepted ({hours}h):     {_n(GateOutcome.ACCEPTED_COMMITTED)}")
    click.echo(f"  Rejected ({hours}h):     {_n(GateOutcome.REJECTED_LOGGED)}")
    click.echo(f"  Deferred ({hours}h):     {_n(GateOutcome.DEFERRED)}")
    click.echo(f"  Failed ({hours}h):       {_n(GateOutcome.COMMIT_FAILED) + _n(GateOutcome.ERROR)}")


# ------------------------------------------------------------------
# datrain audit
# ------------------------------------------------------------------


@cli.command()
@click.option("--audit-log", default=AUDIT_LOG_PATH, show_default=True, help="JSONL audit log path.")
@click.option(
    "--outcome",
    type=click.Choice([o.value for o in GateOutcome], case_sensitive=False),
    default=None,
    help="Only show records with this outcome.",
)
@click.option("--limit", "-n", default=20, show_default=True, help="Max records to show (newest).")
def audit(audit_log: str, outcome: str | None, limit: int) -> None:
    """Print recent audit records."""
    from datrain.intake.audit import read_audit_file

    entries = read_audit_file(
        audit_log,
        outcome=GateOutcome(outcome) if outcome else None,
        limit=limit,
    )
    if not entries:
        click.echo("No audit records.")
        return

    for e in entries:
        verdict = e.verdict.value if e.verdict else "-"
        line = f"{e.timestamp:%Y-%m-%d %H:%M:%S} {e.outcome.value:<20} {verdict:<14} {e.action:<14} {e.file_name}"
        if e.error_message:
            line += f"  ({e.error_message})"
        click.echo(line)


# ------------------------------------------------------------------
# datrain protect
# ------------------------------------------------------------------


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--command", "privacy_command", default=PRIVACY_COMMAND, help="External ACL tool to use instead of chmod.")
def protect(path: Path, privacy_command: str) -> None:
    """Restrict PATH so only the current user can access it."""
    from datrain.intake.privacy import build_enforcer

    enforcer = build_enforcer(privacy_command or None)
    if not enforcer.protect(path):
        click.echo(f"Error: could not protect {path}", err=True)
        sys.exit(1)
    kind = "Directory" if path.is_dir() else "File"
    click.echo(f"{kind} protected: {path}")
