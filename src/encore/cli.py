"""CLI interface for the Encore import service."""

from __future__ import annotations

from collections import deque
from datetime import UTC

import httpx
import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from encore.config import AppConfig, ensure_dirs, get_base_dir, load_config, save_config

app = typer.Typer(
    name="encore",
    help="Import and resync artist catalogs, shows and setlists.",
    add_completion=False,
)
console = Console()


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# RPC helper
# ---------------------------------------------------------------------------


def _server_url() -> str:
    cfg = load_config()
    return f"http://{cfg.server.host}:{cfg.server.port}"


def send_command(cmd: str, *, timeout: float | None = 10.0, **params: object) -> dict:
    """Send a typed RPC command to the running server.

    Raises a user-friendly error (via ``typer.Exit``) when the server is
    unreachable or rejects the command.
    """
    payload: dict = {"cmd": cmd, **{k: v for k, v in params.items() if v is not None}}
    base_url = _server_url()
    try:
        with httpx.Client(base_url=base_url) as client:
            response = client.post("/rpc", json=payload, timeout=timeout)
            response.raise_for_status()
            return response.json()
    except httpx.ConnectError:
        console.print(
            f"[red]Could not connect to server at {base_url}.[/red]  Is it running?  Try [bold]encore serve[/bold].",
        )
        raise typer.Exit(1) from None
    except httpx.HTTPStatusError as exc:
        console.print(f"[red]Server returned an error:[/red] {exc.response.status_code}")
        raise typer.Exit(1) from exc


def _check(result: dict) -> dict:
    if not result.get("ok", True):
        console.print(f"[red]Error:[/red] {result.get('error', 'unknown')}")
        raise typer.Exit(1)
    return result.get("data", {})


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration string."""
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def _human_time(iso_str: str | None) -> str:
    """Convert an ISO timestamp to a relative time string."""
    if not iso_str:
        return "-"
    from datetime import datetime

    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        diff = (datetime.now(UTC) - dt).total_seconds()
        if diff < 0:
            abs_diff = abs(diff)
            if abs_diff < 60:
                return f"in {int(abs_diff)}s"
            if abs_diff < 3600:
                return f"in {int(abs_diff / 60)} min"
            return f"in {int(abs_diff / 3600)}h {int((abs_diff % 3600) / 60)}m"
        if diff < 60:
            return f"{int(diff)}s ago"
        if diff < 3600:
            return f"{int(diff / 60)} min ago"
        return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
    except (ValueError, AttributeError):
        return iso_str


_STAGE_COLORS = {"completed": "green", "failed": "red", "idle": "dim"}


def _print_import_status(data: dict) -> None:
    stage = data.get("status", "unknown")
    color = _STAGE_COLORS.get(stage, "blue")
    console.print()
    if data.get("name"):
        console.print(f"  [bold]Artist:[/bold]    {data['name']}")
    console.print(f"  [bold]Stage:[/bold]     [{color}]{stage}[/{color}]")
    console.print(f"  [bold]Progress:[/bold]  {data.get('progress', 0)}%")
    if data.get("message"):
        console.print(f"  [bold]Message:[/bold]   {data['message']}")
    if data.get("error"):
        console.print(f"  [bold red]Error:[/bold red]     {data['error']}")
    console.print(f"  [bold]Started:[/bold]   {_human_time(data.get('startedAt'))}")
    console.print(f"  [bold]Updated:[/bold]   {_human_time(data.get('updatedAt'))}")
    console.print()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@app.command()
def serve(
    no_scheduler: bool = typer.Option(False, "--no-scheduler", help="Do not run periodic resync"),
) -> None:
    """Run the API server in the foreground (Ctrl+C to stop)."""
    import asyncio

    from encore.logging import setup_logging
    from encore.server.runtime import serve as run_server

    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir, console=True)
    console.print(f"[green]Serving[/green] on http://{cfg.server.host}:{cfg.server.port}")
    asyncio.run(run_server(cfg, scheduler=not no_scheduler))


@app.command()
def stop() -> None:
    """Ask the running server to shut down gracefully."""
    _check(send_command("shutdown"))
    console.print("[green]Server stopping.[/green]")


@app.command()
def pause() -> None:
    """Pause scheduled resync runs."""
    _check(send_command("pause"))
    console.print("[yellow]Scheduled resync paused.[/yellow]")


@app.command()
def resume() -> None:
    """Resume scheduled resync runs."""
    _check(send_command("resume"))
    console.print("[green]Scheduled resync resumed.[/green]")


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------


@app.command()
def add(
    tm_attraction_id: str = typer.Argument(help="Ticketmaster attraction id"),
) -> None:
    """Create an artist from a Ticketmaster attraction and start its import."""
    data = _check(send_command("import_artist", tm_attraction_id=tm_attraction_id, timeout=60.0))
    console.print(f"[green]Import started[/green] for [bold]{data.get('slug')}[/bold] ({data.get('artistId')})")


@app.command(name="import")
def import_artist(
    artist_id: str = typer.Argument(help="Artist id"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Block until the import finishes"),
) -> None:
    """Start (or join) a full import for an existing artist."""
    result = send_command("import_artist", artist_id=artist_id, wait=wait, timeout=None if wait else 10.0)
    if not wait:
        data = _check(result)
        if data.get("alreadyRunning"):
            console.print("[yellow]Import already running.[/yellow]")
        else:
            console.print("[green]Import started.[/green]")
        return

    data = result.get("data", {})
    if not result.get("ok", True):
        prefix = "Conflict" if data.get("conflict") else "Failed"
        console.print(f"[red]{prefix}:[/red] {result.get('error', 'unknown')}")
        raise typer.Exit(1)
    stats = data.get("stats", {})
    console.print(f"[green]Import completed[/green] in {_format_duration(data.get('durationSeconds', 0))}")
    for key in ("songs", "shows", "venues", "setlists", "predicted_setlists", "errors"):
        console.print(f"    {key}: {stats.get(key, 0)}")
    if stats.get("skipped_stages"):
        console.print(f"    skipped: {', '.join(stats['skipped_stages'])}")


@app.command()
def status(
    artist_id: str = typer.Argument(None, help="Artist id; omit for server status"),
) -> None:
    """Show an artist's import status, or the server status."""
    if artist_id:
        _print_import_status(_check(send_command("import_status", artist_id=artist_id)))
        return

    data = _check(send_command("status"))
    console.print()
    uptime_secs = data.get("uptime_seconds")
    if uptime_secs is not None:
        console.print(f"  [bold]Uptime:[/bold]  {_format_duration(uptime_secs)}")
    console.print(f"  [bold]Active:[/bold]  {len(data.get('active_imports', []))} import(s)")

    sched = data.get("scheduler")
    if sched:
        console.print("\n  [bold cyan]Scheduler[/bold cyan]")
        console.print(f"    mode:     {sched.get('default_mode')}")
        console.print(f"    interval: {sched.get('interval_minutes')}m")
        console.print(f"    paused:   {sched.get('paused')}")
        console.print(f"    last:     {_human_time(sched.get('last_run_at'))}")
        console.print(f"    next:     {_human_time(sched.get('next_run_at'))}")

    counts = data.get("counts")
    if counts:
        console.print("\n  [bold cyan]Counters[/bold cyan]")
        for key, value in counts.items():
            console.print(f"    {key + ':':10s} {value}")
    console.print()


@app.command()
def active() -> None:
    """List imports running right now."""
    data = _check(send_command("active_imports"))
    imports = data.get("imports", [])
    if not imports:
        console.print("[dim]No imports running.[/dim]")
        return

    table = Table(title="Active imports")
    table.add_column("Artist")
    table.add_column("Stage")
    table.add_column("Progress", justify="right")
    table.add_column("Running for", justify="right")
    for item in imports:
        table.add_row(
            item["artistId"],
            item["stage"],
            f"{item['progress']}%",
            _format_duration(item.get("durationSeconds", 0)),
        )
    console.print(table)


@app.command()
def resync(
    mode: str = typer.Option("auto", "--mode", "-m", help="Selection mode: all, stale or auto"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum artists to process"),
    force: bool = typer.Option(False, "--force", help="Ignore sync age in stale mode"),
    max_age: int = typer.Option(None, "--max-age", help="Hours after which a sync is stale"),
) -> None:
    """Run a resync batch on the server and print its summary."""
    if mode not in ("all", "stale", "auto"):
        console.print(f"[red]Invalid mode:[/red] {mode} (choose from: all, stale, auto)")
        raise typer.Exit(1)

    data = _check(send_command("resync", mode=mode, limit=limit, force=force, max_age_hours=max_age, timeout=None))
    console.print(
        f"\n  [bold]{data.get('processed', 0)}[/bold] of {data.get('totalFound', 0)} processed "
        f"([green]{data.get('completed', 0)} ok[/green], [red]{data.get('failed', 0)} failed[/red]) "
        f"in {_format_duration(data.get('processingTimeSeconds', 0))}"
    )
    for detail in data.get("details", []):
        mark = "[green]ok[/green]" if detail["success"] else f"[red]failed[/red] {detail.get('error') or ''}"
        console.print(f"    {detail['name']}: {mark}")
    console.print()


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    imports: bool = typer.Option(False, "--imports", help="Show import.log (JSON) instead of encore.log"),
) -> None:
    """Show recent server log output."""
    filename = "import.log" if imports else "encore.log"
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style for structlog console (``[error    ]``) or JSON (``"level": "error"``) lines."""
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")
    for section_name in AppConfig.model_fields:
        section = getattr(cfg, section_name)
        console.print(f"[bold cyan]\\[{section_name}][/bold cyan]")
        values = {name: getattr(section, name) for name in type(section).model_fields}
        width = max(len(name) for name in values)
        for name, value in values.items():
            shown = _mask(value) if isinstance(value, SecretStr) else (value if value != "" else "[dim](not set)[/dim]")
            console.print(f"  {name:<{width}} = {shown}")
        console.print()


@config_app.command(name="path")
def config_path() -> None:
    """Print the location of the configuration file."""
    console.print(str(get_base_dir() / "config.toml"), highlight=False)


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. sync.interval_minutes"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. encore config set sync.interval_minutes 15)."""
    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. sync.default_mode).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    if section_name not in AppConfig.model_fields:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(AppConfig.model_fields)}[/dim]")
        raise typer.Exit(1)

    section_model = getattr(cfg, section_name)
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    section_data = section_model.model_dump(mode="python")
    section_data[field_name] = coerced
    setattr(cfg, section_name, type(section_model)(**section_data))
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: type) -> object:
    """Coerce a string value to the expected field type."""
    import typing

    origin = typing.get_origin(field_type)
    args = typing.get_args(field_type)

    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is float:
        return float(raw)

    if field_type is str:
        return raw

    if origin is typing.Literal:
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)
        return raw

    return raw