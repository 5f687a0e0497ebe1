"""
CLI interface for ccmeter.

Renders engine reports as tables or JSON. All numbers come from
build_usage_report; this module only parses arguments and formats output.
"""

import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ccmeter.config.loader import EngineConfig, load_engine_config
from ccmeter.core.blocks import BillingBlock
from ccmeter.core.forecast import LimitForecast, rate_in_unit, suggest_rate_unit
from ccmeter.core.pricing import CostMode
from ccmeter.core.report import UsageReport, recent_blocks, run_pipeline
from ccmeter.core.rollup import PeriodSummary, grand_total
from ccmeter.storage.loader import LoadResult, default_log_roots

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

PathsOption = typer.Option(
    None, "--path", "-p",
    help="Usage log file or directory (repeatable); defaults to the assistant's log folders",
)
ConfigOption = typer.Option(None, "--config", "-c", help="YAML engine configuration file")
ModeOption = typer.Option(None, "--mode", "-m", help="Cost mode: auto, calculate or display")
TimezoneOption = typer.Option(None, "--timezone", "-z", help="IANA timezone for day/month grouping")
JsonOption = typer.Option(False, "--json", "-j", help="Print JSON instead of tables")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _build_config(
    config_path: Optional[Path],
    mode: Optional[str],
    timezone_name: Optional[str],
) -> EngineConfig:
    config = load_engine_config(config_path) if config_path else EngineConfig()
    overrides = {}
    if mode:
        try:
            overrides["cost_mode"] = CostMode(mode.lower())
        except ValueError:
            valid_modes = [m.value for m in CostMode]
            raise ValueError(f"--mode must be one of: {valid_modes}")
    if timezone_name:
        overrides["timezone"] = timezone_name
    return dataclasses.replace(config, **overrides) if overrides else config


def _load_report(
    paths: Optional[List[Path]],
    config_path: Optional[Path],
    mode: Optional[str],
    timezone_name: Optional[str],
    verbose: bool,
    include_gaps: bool = False,
):
    """Load sources and build a report, exiting on fatal problems."""
    _configure_logging(verbose)
    try:
        config = _build_config(config_path, mode, timezone_name)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}", soft_wrap=True)
        sys.exit(EXIT_CODE_FAIL)

    sources = list(paths) if paths else default_log_roots()
    if not sources:
        console.print("[red]Error:[/] no usage log directories found; pass --path")
        sys.exit(EXIT_CODE_FAIL)

    load_result, report = run_pipeline(sources, config, include_gaps=include_gaps)
    _print_load_diagnostics(load_result)
    if report is None:
        console.print("[red]Error:[/] no readable usage sources", soft_wrap=True)
        sys.exit(EXIT_CODE_FAIL)
    return config, report


def _print_load_diagnostics(load_result: LoadResult) -> None:
    for failure in load_result.failures:
        console.print(f"[yellow]Skipped[/] {failure.source}: {failure.reason}", style="dim")
    if load_result.malformed_count:
        console.print(f"[dim]{load_result.malformed_count} malformed records ignored[/]")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """ccmeter - usage and billing-block reports."""
    if ctx.invoked_subcommand is None:
        console.print("ccmeter - Use --help to see available commands")


@app.command()
def daily(
    paths: Optional[List[Path]] = PathsOption,
    config_path: Optional[Path] = ConfigOption,
    mode: Optional[str] = ModeOption,
    timezone_name: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    verbose: bool = VerboseOption,
):
    """Show usage grouped by calendar day."""
    _, report = _load_report(paths, config_path, mode, timezone_name, verbose)
    _render_summaries("Daily Usage", "Date", report.daily, as_json)


@app.command()
def monthly(
    paths: Optional[List[Path]] = PathsOption,
    config_path: Optional[Path] = ConfigOption,
    mode: Optional[str] = ModeOption,
    timezone_name: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    verbose: bool = VerboseOption,
):
    """Show usage grouped by calendar month."""
    _, report = _load_report(paths, config_path, mode, timezone_name, verbose)
    _render_summaries("Monthly Usage", "Month", report.monthly, as_json)


@app.command()
def session(
    paths: Optional[List[Path]] = PathsOption,
    config_path: Optional[Path] = ConfigOption,
    mode: Optional[str] = ModeOption,
    timezone_name: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    verbose: bool = VerboseOption,
):
    """Show usage grouped by session."""
    _, report = _load_report(paths, config_path, mode, timezone_name, verbose)
    _render_summaries("Session Usage", "Session", report.sessions, as_json)


@app.command()
def blocks(
    paths: Optional[List[Path]] = PathsOption,
    config_path: Optional[Path] = ConfigOption,
    mode: Optional[str] = ModeOption,
    timezone_name: Optional[str] = TimezoneOption,
    recent: bool = typer.Option(False, "--recent", "-r", help="Only recent and active blocks"),
    gaps: bool = typer.Option(False, "--gaps", "-g", help="Show idle gaps between blocks"),
    as_json: bool = JsonOption,
    verbose: bool = VerboseOption,
):
    """Show usage grouped into billing blocks."""
    config, report = _load_report(paths, config_path, mode, timezone_name, verbose, include_gaps=gaps)
    shown = recent_blocks(report, config.recent_block_days) if recent else list(report.blocks)

    if as_json:
        typer.echo(json.dumps({"blocks": [_block_to_dict(b) for b in shown]}, indent=2))
        return

    table = Table(title="Billing Blocks")
    table.add_column("Start")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Models")
    for block in shown:
        if block.is_gap:
            status = "[dim]gap[/]"
        elif block.is_active:
            status = "[green]ACTIVE[/]"
        else:
            status = "done"
        table.add_row(
            block.start_time.strftime("%Y-%m-%d %H:%M"),
            status,
            str(block.message_count),
            _format_tokens(block.token_counts.total_tokens),
            _format_currency(block.cost_usd),
            ", ".join(block.models),
        )
    console.print(table)


@app.command()
def status(
    paths: Optional[List[Path]] = PathsOption,
    config_path: Optional[Path] = ConfigOption,
    mode: Optional[str] = ModeOption,
    timezone_name: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    verbose: bool = VerboseOption,
):
    """Show the active block, burn rate, forecasts and critical percentage."""
    config, report = _load_report(paths, config_path, mode, timezone_name, verbose)

    if as_json:
        typer.echo(json.dumps(_status_to_dict(report), indent=2))
        return

    console.print("\n[bold]Usage Status[/bold]")
    console.print("-" * 40)
    critical = report.critical
    if critical.limit_configured:
        console.print(
            f"Critical: {critical.value:.1f}% ({critical.source.value}) "
            f"- {report.usage_level.value}"
        )
    else:
        console.print("Critical: [dim]no limit configured[/]")

    block = report.active_block
    if block is None:
        console.print("\n[dim]No active billing block.[/]")
    else:
        console.print(f"\n[bold]Active block[/bold] since {block.start_time:%Y-%m-%d %H:%M} UTC")
        console.print(f"Tokens: {_format_tokens(block.token_counts.total_tokens)}")
        console.print(f"Cost: {_format_currency(block.cost_usd)}")

    if report.burn_rate is not None:
        thresholds = config.rate_units
        for label, rate in (
            ("tokens", report.burn_rate.tokens_per_hour),
            ("USD", report.burn_rate.cost_per_hour),
            ("messages", report.burn_rate.messages_per_hour),
        ):
            unit = suggest_rate_unit(rate, thresholds)
            console.print(f"Burn rate: {rate_in_unit(rate, unit):,.2f} {label} {_UNIT_LABELS[unit.value]}")

    if report.projection is not None:
        console.print(
            f"Projected at block end: {_format_tokens(report.projection.total_tokens)} tokens, "
            f"{_format_currency(report.projection.total_cost)} "
            f"({report.projection.remaining_minutes} min left)"
        )

    if report.forecast is not None:
        for forecast in report.forecast.all:
            console.print(_format_forecast(forecast))

    if report.unpriced_models:
        console.print(f"\n[yellow]Unpriced models:[/] {', '.join(report.unpriced_models)}")
    console.print()


_UNIT_LABELS = {"per_day": "/day", "per_hour": "/hour", "per_minute": "/min"}


def _render_summaries(title: str, key_label: str, summaries, as_json: bool) -> None:
    total = grand_total(list(summaries))
    if as_json:
        payload = {
            "rows": [_summary_to_dict(s) for s in summaries],
            "total": _summary_to_dict(total),
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    if not summaries:
        console.print("\n[dim]No usage data found.[/]")
        return

    table = Table(title=title)
    table.add_column(key_label)
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cache Create", justify="right")
    table.add_column("Cache Read", justify="right")
    table.add_column("Total Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Models")
    for summary in list(summaries) + [total]:
        counts = summary.token_counts
        table.add_row(
            "[bold]Total[/]" if summary is total else summary.key,
            f"{counts.input_tokens:,}",
            f"{counts.output_tokens:,}",
            f"{counts.cache_creation_tokens:,}",
            f"{counts.cache_read_tokens:,}",
            f"{counts.total_tokens:,}",
            _format_currency(summary.cost_usd),
            "" if summary is total else ", ".join(summary.models),
        )
    console.print(table)


def _summary_to_dict(summary: PeriodSummary) -> dict:
    counts = summary.token_counts
    return {
        "key": summary.key,
        "inputTokens": counts.input_tokens,
        "outputTokens": counts.output_tokens,
        "cacheCreationTokens": counts.cache_creation_tokens,
        "cacheReadTokens": counts.cache_read_tokens,
        "totalTokens": counts.total_tokens,
        "costUSD": summary.cost_usd,
        "messageCount": summary.message_count,
        "models": list(summary.models),
        "unpricedCount": summary.unpriced_count,
        "project": summary.project,
    }


def _block_to_dict(block: BillingBlock) -> dict:
    return {
        "id": block.block_id,
        "startTime": block.start_time.isoformat(),
        "endTime": block.end_time.isoformat(),
        "actualEndTime": block.actual_end_time.isoformat() if block.actual_end_time else None,
        "isActive": block.is_active,
        "isGap": block.is_gap,
        "messageCount": block.message_count,
        "totalTokens": block.token_counts.total_tokens,
        "costUSD": block.cost_usd,
        "models": list(block.models),
    }


def _forecast_to_dict(forecast: LimitForecast) -> dict:
    return {
        "metric": forecast.metric.value,
        "current": forecast.current,
        "limit": forecast.limit,
        "ratePerHour": forecast.rate_per_hour,
        "hoursUntilLimit": forecast.hours_until_limit,
        "severity": forecast.severity.value,
    }


def _status_to_dict(report: UsageReport) -> dict:
    burn_rate = report.burn_rate
    return {
        "generatedAt": report.generated_at.isoformat(),
        "criticalPercentage": report.critical.value,
        "criticalSource": report.critical.source.value,
        "limitConfigured": report.critical.limit_configured,
        "usageLevel": report.usage_level.value,
        "activeBlock": _block_to_dict(report.active_block) if report.active_block else None,
        "burnRate": dataclasses.asdict(burn_rate) if burn_rate else None,
        "projection": dataclasses.asdict(report.projection) if report.projection else None,
        "forecasts": [_forecast_to_dict(f) for f in report.forecast.all] if report.forecast else [],
        "tokenLimit": report.token_limit,
        "unpricedModels": list(report.unpriced_models),
    }


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def _format_forecast(forecast: LimitForecast) -> str:
    name = forecast.metric.value
    if forecast.hours_until_limit is None:
        return f"{name}: [dim]{forecast.severity.value.replace('_', ' ')}[/]"
    if forecast.hours_until_limit <= 0:
        return f"{name}: [red]limit reached[/]"
    return f"{name}: {forecast.hours_until_limit:.1f}h until limit ({forecast.severity.value})"


if __name__ == "__main__":
    app()
