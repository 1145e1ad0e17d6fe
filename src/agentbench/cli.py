"""CLI entry point for agentbench."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from agentbench import __version__
from agentbench.engine import run_suite, run_test_file, summarize
from agentbench.formatters.json_fmt import format_json
from agentbench.formatters.junit import format_junit
from agentbench.generators import GenerationError, generate_tests
from agentbench.loader import LoadError
from agentbench.models import BenchmarkRun, TestRun
from agentbench.registry import InitializationError

FATAL_ERRORS = (LoadError, InitializationError, GenerationError)

_FORMATTERS = {
    "json": (format_json, "report.json"),
    "junit": (format_junit, "report.xml"),
}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure the root logger: rich console output plus an optional file."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=True),
    ]
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=handlers, force=True)
    # Keep HTTP client chatter out of normal runs.
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__, prog_name="agentbench")
def cli() -> None:
    """agentbench: benchmark tool-using AI agents against scripted sessions."""


@cli.command()
@click.option("--file", "-f", "test_file", default=None, type=click.Path(), help="Path to a YAML test file.")
@click.option("--suite", "-s", "suite_file", default=None, type=click.Path(), help="Path to a YAML suite file.")
@click.option("--output", "-o", default=None, help="Report path (default: report.json or report.xml).")
@click.option("--report-type", type=click.Choice(sorted(_FORMATTERS)), default="json", show_default=True,
              help="Report format.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging and per-assertion output.")
@click.option("--log-file", default=None, type=click.Path(), help="Also write logs to this file.")
def run(
    test_file: Optional[str],
    suite_file: Optional[str],
    output: Optional[str],
    report_type: str,
    verbose: bool,
    log_file: Optional[str],
) -> None:
    """Run a test file or a suite."""
    if bool(test_file) == bool(suite_file):
        click.echo("Error: pass exactly one of --file or --suite.", err=True)
        sys.exit(1)
    setup_logging(verbose, log_file)

    results: List[TestRun] = []
    try:
        if suite_file:
            bench_run = asyncio.run(run_suite(suite_file, results=results))
        else:
            bench_run = asyncio.run(run_test_file(test_file, results=results))
    except FATAL_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted; writing partial report.", err=True)
        partial = BenchmarkRun(
            id="interrupted", name=suite_file or test_file or "", results=results,
            summary=summarize(results), success=False, created_at="",
        )
        _write_report(partial, report_type, output)
        sys.exit(130)

    _print_run_results(bench_run, verbose)
    _write_report(bench_run, report_type, output)
    if not bench_run.success:
        sys.exit(1)


@cli.command()
@click.option("--config", "-c", "config_file", required=True, type=click.Path(),
              help="YAML file with providers, servers, agents and a generator section.")
@click.option("--output-dir", default=".", show_default=True, help="Directory for the generated file.")
@click.option("--dry-run", is_flag=True, help="Print the generated test file instead of writing it.")
@click.option("--seed", type=int, default=None, help="Seed passed to the model for its random choices.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
@click.option("--log-file", default=None, type=click.Path(), help="Also write logs to this file.")
def generate(
    config_file: str,
    output_dir: str,
    dry_run: bool,
    seed: Optional[int],
    verbose: bool,
    log_file: Optional[str],
) -> None:
    """Generate a test file with an LLM."""
    setup_logging(verbose, log_file)
    try:
        result = asyncio.run(generate_tests(config_file, output_dir=output_dir, dry_run=dry_run, seed=seed))
    except FATAL_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if dry_run:
        click.echo(result, nl=False)
    else:
        click.echo(f"Generated tests written to {result}")


def _write_report(bench_run: BenchmarkRun, report_type: str, output: Optional[str]) -> None:
    formatter, default_name = _FORMATTERS[report_type]
    path = Path(output or default_name)
    if path.parent != Path("."):
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(formatter(bench_run), encoding="utf-8")
    click.echo(f"Report written to {path}")


def _print_run_results(bench_run: BenchmarkRun, verbose: bool) -> None:
    """Print run results as a formatted table."""
    click.echo(f"\n{'='*60}")
    click.echo(f"Run: {bench_run.name}  |  {bench_run.id}")
    click.echo(f"{'='*60}")

    for r in bench_run.results:
        ex = r.execution
        status = click.style("PASS", fg="green") if r.passed else click.style("FAIL", fg="red")
        click.echo(f"  {status}  {ex.session_name}/{ex.test_name} ({ex.latency_ms}ms, {ex.tokens_used} tokens)")
        if verbose or not r.passed:
            for a in r.assertions:
                if verbose or not a.passed:
                    mark = "ok" if a.passed else "x"
                    click.echo(f"         [{mark}] {a.type}: {a.message}")
            for err in ex.errors:
                click.echo(f"         error: {err}")

    s = bench_run.summary
    click.echo(f"\nTotal: {s['total']}  Passed: {s['passed']}  Failed: {s['failed']}  "
               f"Pass rate: {s['pass_rate']:.0%}")
    verdict = click.style("SUCCESS", fg="green") if bench_run.success else click.style("FAILURE", fg="red")
    click.echo(f"Result: {verdict}")
    click.echo()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
