import asyncio
import importlib.metadata
import logging
import time
from pathlib import Path
from typing import List, NoReturn, Optional, Sequence

import typer

from .analyzer import AnalysisError, Analyzer
from .classify import count_dead
from .config import AnalyzerConfig, ConfigError, load_config, load_dotenv_for_root
from .files import collect_files, load_target_file_set
from .logging_utils import (
    PACKAGE_LOGGER,
    log_event,
    setup_logging,
    setup_rotating_logger,
)
from .lsp_client import LspClient, LspError
from .models import EnrichedNode
from .report import build_report, format_error
from .snapshot import SnapshotError, compare_with_snapshot, generate_snapshot
from .syntax import SyntaxMatcher

RUN_LOGGER_NAME = f"{PACKAGE_LOGGER}.run"

app = typer.Typer(add_completion=False)


def _sca_version() -> str:
    try:
        return importlib.metadata.version("smells-code-analyzer")
    except Exception:
        return "unknown"


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"smells-code-analyzer {_sca_version()}")
    raise typer.Exit(code=0)


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    lines = [f"error: {message}"]
    current = cause
    while current is not None:
        lines.append(f"  caused by: {str(current) or current.__class__.__name__}")
        current = current.__cause__
    typer.echo("\n".join(lines), err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


@app.command()
def analyze(
    config_file: Path = typer.Option(
        ..., "--config-file", "-c", help="Path to the JSON or YAML configuration"
    ),
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", min=0, help="Override the configured threshold"
    ),
    files_from: Optional[Path] = typer.Option(
        None, "--files-from", help="File with newline-separated paths to analyze"
    ),
    generate_snapshot_path: Optional[Path] = typer.Option(
        None, "--generate-snapshot", help="Write found errors to a JSON snapshot"
    ),
    compare_snapshot_path: Optional[Path] = typer.Option(
        None, "--compare-snapshot", help="Report only errors missing from a snapshot"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (defaults to $SCA_LOG_LEVEL or WARNING)"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Find dead declarations and useless name prefixes."""
    setup_logging(log_level)
    started = time.monotonic()
    try:
        config = load_config(config_file, threshold)
    except ConfigError as exc:
        _raise_exit(f"Failed to load config {config_file}", cause=exc)

    only = None
    if files_from is not None:
        try:
            only = load_target_file_set(files_from)
        except OSError as exc:
            _raise_exit(f"Failed to read file list {files_from}", cause=exc)

    logger = logging.getLogger(RUN_LOGGER_NAME)
    if config.log is not None:
        logger = setup_rotating_logger(RUN_LOGGER_NAME, config.log)
    log_event(logger, logging.INFO, "run.config", summary=config.summary())
    load_dotenv_for_root(config.project_root_path)

    try:
        files = collect_files(config, only)
    except OSError as exc:
        _raise_exit("Failed to collect files", cause=exc)
    typer.echo(f"FILES TO ANALYZE: {len(files)}")

    try:
        exit_code = asyncio.run(
            _run_analysis(
                config,
                files,
                generate_snapshot_path=generate_snapshot_path,
                compare_snapshot_path=compare_snapshot_path,
                logger=logger,
            )
        )
    except (LspError, AnalysisError, SnapshotError, OSError) as exc:
        _raise_exit("Analysis failed", cause=exc)
    if exit_code:
        raise typer.Exit(code=exit_code)
    typer.echo(f"Analyze took {time.monotonic() - started:.3f} s")


async def _run_analysis(
    config: AnalyzerConfig,
    files: Sequence[Path],
    *,
    generate_snapshot_path: Optional[Path],
    compare_snapshot_path: Optional[Path],
    logger: logging.Logger,
) -> int:
    matcher = SyntaxMatcher(config.grammar, config.reference_nodes)
    client = LspClient.from_config(config, logger=logger)
    await client.start()
    try:
        exit_code = await _analyze_files(
            config,
            Analyzer(config, matcher, client, logger=logger),
            files,
            generate_snapshot_path=generate_snapshot_path,
            compare_snapshot_path=compare_snapshot_path,
        )
    except BaseException:
        await client.terminate()
        raise
    await client.shutdown()
    return exit_code


async def _analyze_files(
    config: AnalyzerConfig,
    analyzer: Analyzer,
    files: Sequence[Path],
    *,
    generate_snapshot_path: Optional[Path],
    compare_snapshot_path: Optional[Path],
) -> int:
    all_nodes: List[EnrichedNode] = []
    for index, path in enumerate(files, 1):
        if config.show_progress:
            typer.echo(f"Analyze [{index}/{len(files)}] {path}")
        nodes = await analyzer.analyze_file(path)
        report = build_report(nodes, config.show_passed)
        if report:
            typer.echo(report)
        all_nodes.extend(nodes)

    dead_count = count_dead(all_nodes)
    typer.echo(f"Found {dead_count} dead entities")

    if generate_snapshot_path is not None:
        generate_snapshot(all_nodes, generate_snapshot_path)
        typer.echo(f"Snapshot saved to {generate_snapshot_path}")

    if compare_snapshot_path is not None:
        new_errors = compare_with_snapshot(all_nodes, compare_snapshot_path)
        if new_errors:
            typer.echo("\nNew errors found:")
            for node in new_errors:
                typer.echo(format_error(node))
            typer.echo(f"error: Found {len(new_errors)} new errors", err=True)
            return 1
        typer.echo("No new errors found")

    if config.threshold is not None and dead_count > config.threshold:
        typer.echo(
            f"error: Found {dead_count} dead entities, threshold is {config.threshold}",
            err=True,
        )
        return 1
    return 0
