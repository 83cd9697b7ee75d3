"""CLI interface for video-archiver using Typer.

This module provides the main entry point for the video-archiver tool,
with commands for adding URLs, inspecting and steering queue items,
running the background service, editing settings and verifying
dependencies.
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .core.errors import ConfigurationError
from .core.service import ApiResponse, ArchiveService
from .core.state import CLEAR_GROUPS, ItemStatus, UploadTarget
from .utils.config import SECRET_KEYS, ArchiveConfig
from .utils.logging import mask_sensitive_data, setup_logging
from .utils.url_detect import parse_links_file

# Load .env file if present
load_dotenv()

app = typer.Typer(
    name="video-archiver",
    help="Download videos with yt-dlp and archive them on Filemoon / Files.vc.",
    add_completion=False,
)

console = Console()

DEFAULT_WORKDIR = Path("work")

WORKDIR_OPTION = typer.Option(
    DEFAULT_WORKDIR,
    "--workdir",
    "-w",
    envvar="VIDEO_ARCHIVER_WORKDIR",
    help="Working directory (database, logs, default downloads)",
)


def _open_service(workdir: Path) -> ArchiveService:
    return ArchiveService(ArchiveConfig.from_env(workdir))


def _print_response(response: ApiResponse) -> None:
    """Print a service response and exit non-zero on failure."""
    if response.success:
        console.print(f"[green]{response.message}[/green]")
        return
    console.print(f"[red]Error:[/red] {response.message}")
    raise typer.Exit(1)


def _truncate(text: Optional[str], max_length: int = 50) -> str:
    """Truncate text for display.

    Args:
        text: The text to truncate.
        max_length: Maximum length of the result.

    Returns:
        Truncated text with ellipsis if needed.
    """
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _format_status(status: str) -> str:
    """Format status with color for rich output.

    Args:
        status: The item status value.

    Returns:
        Formatted status string with color markup.
    """
    color_map = {
        ItemStatus.ENCODED.value: "green",
        ItemStatus.UPLOADED.value: "green",
        ItemStatus.FAILED.value: "red",
        ItemStatus.CANCELLED.value: "dim",
        ItemStatus.QUEUED.value: "white",
        ItemStatus.COMPLETED.value: "cyan",
    }
    color = color_map.get(status, "yellow")
    return f"[{color}]{status}[/{color}]"


def _format_bytes(size_bytes: float) -> str:
    """Format bytes to human-readable size."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


def _items_table(title: str, items: List[dict]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title / URL", max_width=45)
    table.add_column("Status")
    table.add_column("Message", max_width=40)
    table.add_column("Filemoon", style="magenta")
    table.add_column("Files.vc", style="magenta")
    table.add_column("Updated")

    for item in items:
        table.add_row(
            item["id"],
            _truncate(item.get("title") or item["url"], 45),
            _format_status(item["status"]),
            _truncate(item.get("message"), 40),
            item.get("filemoon_code") or "",
            item.get("filesvc_code") or "",
            item["updated_at"][:16].replace("T", " "),
        )
    return table


def _parse_targets(target: Optional[str]) -> Optional[List[UploadTarget]]:
    if target is None:
        return None
    if target == "both":
        return [UploadTarget.FILEMOON, UploadTarget.FILES_VC]
    try:
        return [UploadTarget(target)]
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown target '{target}'. Use filemoon, files_vc or both.")
        raise typer.Exit(2)


@app.command()
def add(
    url: Optional[str] = typer.Argument(None, help="Video URL to enqueue"),
    links: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        help="Path to file containing URLs (one per line)",
    ),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Add a URL (or every URL in a links file) to the download queue.

    Example:
        video-archiver add https://example.com/watch?v=abc
    """
    if (url is None) == (links is None):
        console.print("[red]Error:[/red] Pass either a URL or --file.")
        raise typer.Exit(2)

    with _open_service(workdir) as service:
        if url is not None:
            _print_response(service.enqueue_url(url))
            return

        try:
            urls = parse_links_file(links)
        except FileNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        response = service.enqueue_many(urls)
        for entry in response.data:
            mark = "[green]+[/green]" if entry["success"] else "[yellow]-[/yellow]"
            console.print(f"  {mark} {_truncate(entry['url'], 60)}  {entry['message']}")
        console.print(f"\n[bold]{response.message}[/bold]")


@app.command()
def queue(
    show_all: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Include encoded, failed and cancelled items",
    ),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show items that are still in progress.
    """
    with _open_service(workdir) as service:
        response = service.list_all() if show_all else service.list_active()
        stats = service.stats().data

    if not response.data:
        console.print("[yellow]No items found.[/yellow]")
    else:
        console.print(_items_table("Queue" if not show_all else "All Items", response.data))

    console.print(
        f"\n[bold]Summary:[/bold] Total: {stats['total']}, "
        f"Queued: {stats['queued']}, "
        f"Downloading: {stats['downloading']}, "
        f"[green]Encoded: {stats['encoded']}[/green], "
        f"[red]Failed: {stats['failed']}[/red]"
    )


@app.command()
def encoded(workdir: Path = WORKDIR_OPTION) -> None:
    """
    Show archived items, most recently finished first.
    """
    with _open_service(workdir) as service:
        response = service.list_encoded()

    if not response.data:
        console.print("[yellow]No encoded items yet.[/yellow]")
        return
    console.print(_items_table("Encoded", response.data))


@app.command()
def show(
    item_id: str = typer.Argument(..., help="Item ID"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show every stored field of one item.
    """
    with _open_service(workdir) as service:
        response = service.get_by_id(item_id)

    if not response.success:
        _print_response(response)

    table = Table(title=f"Item {item_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in response.data.items():
        display = _format_status(value) if key == "status" else ("" if value is None else str(value))
        table.add_row(key, display)
    console.print(table)


@app.command()
def cancel(
    item_id: str = typer.Argument(..., help="Item ID"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Cancel a queued or downloading item.
    """
    with _open_service(workdir) as service:
        _print_response(service.cancel_by_id(item_id))


@app.command()
def retry(
    item_id: str = typer.Argument(..., help="Item ID"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Re-queue a failed item.
    """
    with _open_service(workdir) as service:
        _print_response(service.retry_by_id(item_id))


@app.command()
def upload(
    item_id: str = typer.Argument(..., help="Item ID"),
    target: Optional[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="filemoon, files_vc or both (defaults to the upload_target setting)",
    ),
    workdir: Path = WORKDIR_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """
    Upload a completed item now and wait for the result.
    """
    targets = _parse_targets(target)
    setup_logging(workdir, verbose=verbose)
    with _open_service(workdir) as service:
        response = service.trigger_upload_by_id(item_id, targets=targets, wait=True)
    _print_response(response)


@app.command("restart-encoding")
def restart_encoding(
    item_id: str = typer.Argument(..., help="Item ID"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Ask Filemoon to encode an uploaded item again.
    """
    with _open_service(workdir) as service:
        _print_response(service.restart_encoding_by_id(item_id))


@app.command()
def clear(
    group: str = typer.Argument(..., help=f"One of: {', '.join(CLEAR_GROUPS)}"),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Clear without confirmation",
    ),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Delete all items in a status group.
    """
    if group in CLEAR_GROUPS and not force:
        confirm = typer.confirm(f"Delete all {group} items? This cannot be undone.")
        if not confirm:
            console.print("[yellow]Cancelled.[/yellow]")
            raise typer.Exit(0)

    with _open_service(workdir) as service:
        _print_response(service.clear_by_status(group))


@app.command()
def poll(
    workdir: Path = WORKDIR_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """
    Check Filemoon encoding status once for every uploaded item.
    """
    setup_logging(workdir, verbose=verbose)
    with _open_service(workdir) as service:
        response = service.poll_encoding()

    if response.success:
        data = response.data
        console.print(
            f"[green]{response.message}[/green] "
            f"Encoded: {data['encoded']}, Failed: {data['failed']}"
        )
    else:
        console.print(f"[yellow]{response.message}[/yellow]")


@app.command()
def run(
    workdir: Path = WORKDIR_OPTION,
    reconcile: bool = typer.Option(
        True,
        "--reconcile/--no-reconcile",
        help="Poll Filemoon encoding status in the background",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """
    Run the archive service in the foreground until interrupted.

    Example:
        video-archiver run --workdir /srv/archive
    """
    logger = setup_logging(workdir, verbose=verbose, service=True)
    service = _open_service(workdir)

    if not service.downloader.verify_installation():
        console.print(
            f"[yellow]Warning:[/yellow] '{service.downloader.executable_name}' could not be run. "
            "Downloads will fail until yt-dlp is installed."
        )

    stop_event = threading.Event()

    def signal_handler(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.warning(f"Received {sig_name}, initiating graceful shutdown...")
        stop_event.set()

    # Only install handlers on the main thread
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    console.print("\n[bold cyan]Archive Service[/bold cyan]")
    console.print(f"  Working dir:     {service.workdir.workdir}")
    console.print(f"  Downloads:       {service.settings.download_directory()}")
    targets = service.settings.upload_targets()
    console.print(f"  Upload targets:  {', '.join(t.display_name for t in targets) or 'none'}")
    console.print(f"  Reconciler:      {'on' if reconcile else 'off'}")
    console.print("\nPress Ctrl+C to stop.\n")

    try:
        service.start(reconcile=reconcile)
        while not stop_event.wait(1.0):
            pass
    except Exception as e:
        console.print(f"[red]Service error:[/red] {e}")
        logger.exception("Service failed with exception")
        raise typer.Exit(1)
    finally:
        service.shutdown()

    console.print("[yellow]Service stopped.[/yellow]")


@app.command()
def settings(
    key: Optional[str] = typer.Argument(None, help="Setting to show or change"),
    value: Optional[str] = typer.Argument(None, help="New value"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show all settings, show one setting, or change one.

    Example:
        video-archiver settings upload_target both
    """
    with _open_service(workdir) as service:
        store = service.settings
        if key is not None and value is not None:
            try:
                store.set_setting(key, value)
            except ConfigurationError as e:
                console.print(f"[red]Error:[/red] {e}")
                raise typer.Exit(1)
            console.print(f"[green]Saved {key}.[/green]")
            return

        values = store.get_all()

    if key is not None:
        if key not in values:
            console.print(f"[red]Error:[/red] Unknown setting: {key}")
            raise typer.Exit(1)
        values = {key: values[key]}

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for name, current in values.items():
        if current and name in SECRET_KEYS:
            current = mask_sensitive_data(current)
        table.add_row(name, current or "[dim]<unset>[/dim]")
    console.print(table)


@app.command()
def check(workdir: Path = WORKDIR_OPTION) -> None:
    """
    Check system dependencies and configuration.

    Verifies:
    - Python version
    - Required packages
    - yt-dlp
    - Hosting API keys
    - Working directory
    """
    table = Table(title="System Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details")

    all_ok = True

    # Python version
    py_version = sys.version_info
    py_ok = py_version >= (3, 9)
    table.add_row(
        "Python",
        "[green]OK[/green]" if py_ok else "[red]FAIL[/red]",
        f"{py_version.major}.{py_version.minor}.{py_version.micro}",
    )
    if not py_ok:
        all_ok = False

    # Required packages
    packages = {"typer": "typer", "rich": "rich", "requests": "requests", "python-dotenv": "dotenv"}
    for pkg, module in packages.items():
        try:
            __import__(module)
            table.add_row(f"Package: {pkg}", "[green]OK[/green]", "Installed")
        except ImportError:
            table.add_row(f"Package: {pkg}", "[red]FAIL[/red]", "Not installed")
            all_ok = False

    with _open_service(workdir) as service:
        # yt-dlp
        version = service.downloader.version()
        if version:
            table.add_row("yt-dlp", "[green]OK[/green]", version)
        else:
            table.add_row(
                "yt-dlp",
                "[red]FAIL[/red]",
                f"'{service.downloader.executable_name}' not found - downloads won't work",
            )
            all_ok = False

        # API keys for the configured targets
        targets = service.settings.upload_targets()
        for target in UploadTarget:
            key = service.settings.api_key(target)
            label = f"{target.display_name} API key"
            if key:
                table.add_row(label, "[green]OK[/green]", f"Set ({mask_sensitive_data(key)})")
            elif target in targets:
                table.add_row(label, "[red]FAIL[/red]", "Not set - uploads will fail")
                all_ok = False
            else:
                table.add_row(label, "[dim]SKIP[/dim]", "Not set (target not enabled)")

        # Working directory
        usage = service.workdir.get_disk_usage()
        table.add_row(
            "Working dir",
            "[green]OK[/green]",
            f"{service.workdir.workdir} ({_format_bytes(usage.get('downloads', 0))} downloaded)",
        )

    console.print(table)

    if all_ok:
        console.print("\n[bold green]All checks passed![/bold green]")
    else:
        console.print("\n[bold yellow]Some checks failed or have warnings.[/bold yellow]")
        console.print("See details above for more information.")
        raise typer.Exit(1)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
