"""CLI entry point for HackHours."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from hackhours.config import DEFAULT_CONFIG_PATH, Config, load_config, save_config
from hackhours.daemon import STATE_PATH, live_daemon, run_daemon, start_daemon, stop_daemon
from hackhours.db import Store, get_open_sessions
from hackhours.errors import HackHoursError
from hackhours.lang import format_project_name
from hackhours.summary import Summary, build_summary
from hackhours.timeutil import (
    date_key,
    format_date_range,
    format_duration,
    format_percent,
    from_ms,
    last_days_range,
    now_ms,
    parse_range,
)

NAME_WIDTH = 20


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Bar of ``width`` cells filled in proportion to ``value / max_value``.

    Any nonzero share fills at least one cell so small entries stay visible.
    """
    filled = 0
    if value > 0 and max_value > 0:
        filled = min(width, max(1, round(width * value / max_value)))
    return "█" * filled + "░" * (width - filled)


def truncate_name(name: str, width: int = NAME_WIDTH) -> str:
    """Shorten a name to ``width`` characters, keeping its tail (paths end in the useful part)."""
    if len(name) <= width:
        return name
    return "..." + name[-(width - 3):]


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _load(config_path: Path) -> Config:
    try:
        return load_config(config_path)
    except (json.JSONDecodeError, ValidationError) as e:
        click.echo(f"Invalid config file {config_path}: {e}", err=True)
        sys.exit(1)


def _resolve_range(from_key: str | None, to_key: str | None, default_days: int) -> tuple[int, int]:
    if from_key is None and to_key is None:
        return last_days_range(default_days)
    if from_key is None or to_key is None:
        raise click.UsageError("Both --from and --to are required.")
    return parse_range(from_key, to_key)


def _summarize(config: Config, start: int, end: int) -> Summary:
    with Store.open(config.db_path) as store:
        return build_summary(store, start, end, config.idle_minutes)


def range_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--to", "to_key", help="End date (YYYY-MM-DD)")(func)
    func = click.option("--from", "from_key", help="Start date (YYYY-MM-DD)")(func)
    return func


def json_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--json", "output_json", is_flag=True, help="Output as JSON")(func)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    envvar="HACKHOURS_CONFIG",
    help="Path to config file",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path) -> None:
    """HackHours: offline local-first coding activity tracker."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("init")
@click.pass_context
def init_command(ctx: click.Context) -> None:
    """Create or update the configuration interactively."""
    config_path: Path = ctx.obj["config_path"]
    current = _load(config_path)

    directories = click.prompt(
        "Which directories should HackHours track? (comma-separated)",
        default=", ".join(current.directories),
    )
    idle_minutes = click.prompt(
        "Idle timeout in minutes",
        default=current.idle_minutes,
        type=click.IntRange(min=1),
    )
    exclude = click.prompt(
        "Exclude globs (comma-separated)",
        default=", ".join(current.exclude),
    )
    data_dir = click.prompt("Data directory", default=current.data_dir)

    config = Config(
        directories=[d.strip() for d in directories.split(",") if d.strip()],
        idle_minutes=idle_minutes,
        exclude=[g.strip() for g in exclude.split(",") if g.strip()],
        data_dir=data_dir,
    )
    save_config(config, config_path)
    click.echo(f"Saved configuration to {config_path}")


@main.command("start")
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    default=STATE_PATH,
    hidden=True,
)
@click.pass_context
def start_command(ctx: click.Context, state_path: Path) -> None:
    """Start background tracking."""
    config_path: Path = ctx.obj["config_path"]
    _load(config_path)
    try:
        pid = start_daemon(config_path, state_path)
    except HackHoursError as e:
        _fail(str(e))
    click.echo(f"HackHours tracking started (pid {pid}).")


@main.command("stop")
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    default=STATE_PATH,
    hidden=True,
)
def stop_command(state_path: Path) -> None:
    """Stop background tracking."""
    try:
        exited = stop_daemon(state_path)
    except HackHoursError as e:
        _fail(str(e))
    if exited:
        click.echo("HackHours tracking stopped.")
    else:
        click.echo("HackHours was asked to stop and is still shutting down.")


@main.command("status")
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    default=STATE_PATH,
    hidden=True,
)
@click.pass_context
def status_command(ctx: click.Context, state_path: Path) -> None:
    """Show whether tracking is running and the open session, if any."""
    config = _load(ctx.obj["config_path"])
    state = live_daemon(state_path)
    if state is None:
        click.echo("HackHours is not running.")
    else:
        started = from_ms(state.started_at).strftime("%Y-%m-%d %H:%M")
        click.echo(f"HackHours is running (pid {state.pid}, since {started}).")

    click.echo(f"Tracking: {', '.join(config.directories)}")
    click.echo(f"Idle timeout: {config.idle_minutes}m")

    if not config.db_path.exists():
        return
    try:
        with Store.open(config.db_path) as store:
            open_sessions = get_open_sessions(store)
    except HackHoursError as e:
        _fail(str(e))
    for session in open_sessions:
        elapsed = format_duration(max(0, now_ms() - session.start_timestamp))
        click.echo(f"Open session: {session.session_id[:8]} (started {elapsed} ago)")


@main.command("daemon")
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    default=STATE_PATH,
    hidden=True,
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug messages")
@click.pass_context
def daemon_command(ctx: click.Context, state_path: Path, verbose: bool) -> None:
    """Run the watcher in the foreground (used by start)."""
    config = _load(ctx.obj["config_path"])
    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=config.log_path,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        run_daemon(config, state_path=state_path)
    except HackHoursError as e:
        _fail(str(e))


def _report(
    ctx: click.Context,
    title: str,
    start: int,
    end: int,
    output_json: bool,
) -> None:
    config = _load(ctx.obj["config_path"])
    try:
        summary = _summarize(config, start, end)
    except HackHoursError as e:
        _fail(str(e))
    if output_json:
        _output_json_summary(start, end, summary)
    else:
        _output_human_summary(title, start, end, summary)


@main.command("today")
@json_option
@click.pass_context
def today_command(ctx: click.Context, output_json: bool) -> None:
    """Show today's summary."""
    start, end = last_days_range(1)
    _report(ctx, "Today", start, end, output_json)


@main.command("week")
@json_option
@click.pass_context
def week_command(ctx: click.Context, output_json: bool) -> None:
    """Show the last 7 days."""
    start, end = last_days_range(7)
    _report(ctx, "Last 7 Days", start, end, output_json)


@main.command("month")
@json_option
@click.pass_context
def month_command(ctx: click.Context, output_json: bool) -> None:
    """Show the last 30 days."""
    start, end = last_days_range(30)
    _report(ctx, "Last 30 Days", start, end, output_json)


@main.command("stats")
@click.option("--from", "from_key", required=True, help="Start date (YYYY-MM-DD)")
@click.option("--to", "to_key", required=True, help="End date (YYYY-MM-DD)")
@json_option
@click.pass_context
def stats_command(ctx: click.Context, from_key: str, to_key: str, output_json: bool) -> None:
    """Show a summary for a custom date range."""
    try:
        start, end = parse_range(from_key, to_key)
    except HackHoursError as e:
        _fail(str(e))
    _report(ctx, f"{from_key} to {to_key}", start, end, output_json)


def _breakdown(
    ctx: click.Context,
    title: str,
    from_key: str | None,
    to_key: str | None,
    output_json: bool,
    pick: Callable[[Summary], dict[str, int]],
    *,
    limit: int | None = None,
    display: Callable[[str], str] = truncate_name,
) -> None:
    try:
        start, end = _resolve_range(from_key, to_key, default_days=7)
    except HackHoursError as e:
        _fail(str(e))
    config = _load(ctx.obj["config_path"])
    try:
        summary = _summarize(config, start, end)
    except HackHoursError as e:
        _fail(str(e))

    entries = sorted(pick(summary).items(), key=lambda item: -item[1])
    if limit is not None:
        entries = entries[:limit]

    if output_json:
        click.echo(json.dumps(
            {
                "period": {"start": date_key(start), "end": date_key(end)},
                "total_ms": summary.total_time_ms,
                "entries": [{"name": name, "total_ms": ms} for name, ms in entries],
            },
            indent=2,
        ))
        return

    click.echo(f"{title}: {format_date_range(start, end)}")
    click.echo()
    _output_table(entries, summary.total_time_ms, display)


@main.command("languages")
@range_options
@json_option
@click.pass_context
def languages_command(
    ctx: click.Context, from_key: str | None, to_key: str | None, output_json: bool
) -> None:
    """Language breakdown (default: last 7 days)."""
    _breakdown(ctx, "Languages", from_key, to_key, output_json, lambda s: s.languages)


@main.command("projects")
@range_options
@json_option
@click.pass_context
def projects_command(
    ctx: click.Context, from_key: str | None, to_key: str | None, output_json: bool
) -> None:
    """Project breakdown (default: last 7 days)."""
    _breakdown(
        ctx,
        "Projects",
        from_key,
        to_key,
        output_json,
        lambda s: s.projects,
        display=lambda root: truncate_name(format_project_name(root)),
    )


@main.command("files")
@range_options
@json_option
@click.pass_context
def files_command(
    ctx: click.Context, from_key: str | None, to_key: str | None, output_json: bool
) -> None:
    """Top 10 files (default: last 7 days)."""
    _breakdown(
        ctx,
        "Files",
        from_key,
        to_key,
        output_json,
        lambda s: s.files_edited,
        limit=10,
        display=lambda path: truncate_name(path, 40),
    )


def _output_json_summary(start: int, end: int, summary: Summary) -> None:
    """Output JSON report."""
    output = {
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "period": {
            "start": date_key(start),
            "end": date_key(end),
        },
        **summary.model_dump(),
    }
    click.echo(json.dumps(output, indent=2))


def _output_table(
    entries: list[tuple[str, int]],
    total_ms: int,
    display: Callable[[str], str] = truncate_name,
) -> None:
    if not entries:
        click.echo("No activity recorded.")
        return

    width = max(NAME_WIDTH, max(len(display(name)) for name, _ in entries))
    max_ms = max(ms for _, ms in entries)
    for name, ms in entries:
        bar = make_progress_bar(ms, max_ms)
        click.echo(
            f"  {display(name):<{width}} {format_duration(ms):>9} "
            f"{format_percent(ms, total_ms):>5}   {bar}"
        )


def _output_human_summary(title: str, start: int, end: int, summary: Summary) -> None:
    """Output human-readable report."""
    click.echo(f"HackHours - {title}: {format_date_range(start, end)}")
    click.echo()

    if summary.total_time_ms == 0:
        click.echo("No time tracked for this period.")
        click.echo()
        click.echo("Run 'hackhours status' to check if tracking is running.")
        return

    click.echo(f"Total: {format_duration(summary.total_time_ms)}")
    click.echo(f"Files edited: {len(summary.files_edited)}")
    click.echo()

    click.echo("By Language:")
    languages = sorted(summary.languages.items(), key=lambda item: -item[1])
    _output_table(languages, summary.total_time_ms)
    click.echo()

    click.echo("By Hour:")
    max_hour = max(summary.activity_by_hour)
    for hour, ms in enumerate(summary.activity_by_hour):
        if ms == 0:
            continue
        click.echo(f"  {hour:02d}:00 {format_duration(ms):>9}   {make_progress_bar(ms, max_hour)}")


if __name__ == "__main__":
    main()
