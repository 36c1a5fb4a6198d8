"""
Defines the command-line interface using Typer, with an interactive Rich menu.

Running `onyx-dl` without a command opens the menu; `download` and `serve`
offer the same flows non-interactively.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Coroutine, Dict, Optional, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import IntPrompt, Prompt
from rich.table import Table

from ._version import __version__
from .config import AUDIO_FORMATS, ConfigManager, Settings
from .constants import CONFIG_FILE, DEFAULT_CONCURRENCY, MAX_CONCURRENCY, MIN_CONCURRENCY
from .dependencies import DependencyManager, InstallProgress
from .exceptions import OnyxError
from .formats import DownloadRequest, DownloadType
from .jobs import BatchResult
from .logging_config import setup_logging
from .server import serve
from .service import DownloadService
from .terminal import TerminalProgressView

console = Console()
log = logging.getLogger(__name__)
T = TypeVar("T")

app = typer.Typer(
    name="onyx-dl",
    help="Concurrent YouTube downloader driving yt-dlp. Run without a command for the interactive menu.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

MENU_CHOICES = {
    '1': 'Download Video (Best Quality)',
    '2': 'Download Video (Select Resolution)',
    '3': 'Download Audio (MP3/OGG/WAV/M4A)',
    '4': 'Download Playlist',
    '5': 'Download Thumbnail',
    '6': 'GUI Version (web server)',
    '7': 'Settings',
    '0': 'Exit',
}
PLAYLIST_QUALITIES = {
    'audio': 'Audio Only (MP3 Best Quality)',
    'max': 'Video - MAX (Best Available)',
    'mid-max': 'Video - Mid-MAX (1080p/720p)',
    '360': 'Video - 360p',
    '240': 'Video - 240p',
    '144': 'Video - 144p',
}
RESOLUTIONS = ['max', '2160', '1440', '1080', '720', '480', '360', '240', '144']


class AppState:
    """Settings shared by the commands of one invocation."""

    def __init__(self, config_manager: ConfigManager, settings: Settings):
        self.config_manager = config_manager
        self.settings = settings


def prompt_concurrency(default: int = DEFAULT_CONCURRENCY) -> int:
    """Asks for a concurrency limit until the answer is within range."""
    while True:
        value = IntPrompt.ask(
            f"How many videos to download at once? ({MIN_CONCURRENCY}-{MAX_CONCURRENCY})",
            default=default,
            console=console,
        )
        if MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
            return value
        console.print(f"[red]Please enter a number between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}.[/red]")


def print_summary(result: BatchResult, titles: Dict[str, str]):
    """Prints the batch outcome, listing every failed job."""
    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="bold cyan", justify="right")
    summary.add_column()
    summary.add_row("Completed:", f"[green]{len(result.completed)}[/green]")
    summary.add_row("Failed:", f"[red]{len(result.failed)}[/red]")
    if result.not_started:
        summary.add_row("Not started:", f"[yellow]{len(result.not_started)}[/yellow]")
    console.print(Panel(summary, title="[bold]Summary[/bold]", border_style="green" if result.ok else "yellow"))

    if result.failed:
        failures = Table(show_header=True, header_style="bold red")
        failures.add_column("Item")
        failures.add_column("Error")
        for job_id, error in result.failed.items():
            failures.add_row(escape(titles.get(job_id, job_id)), escape(error))
        console.print(failures)


async def create_service(settings: Settings) -> DownloadService:
    """Builds the service, showing install progress if yt-dlp has to be downloaded first."""
    with console.status("Checking for yt-dlp...") as status:
        async def show_install_progress(progress: InstallProgress):
            if progress.percent is None:
                status.update(f"Downloading yt-dlp... {progress.received / 1024 / 1024:.1f} MB")
            else:
                status.update(f"Downloading yt-dlp... {progress.percent:.0f}%")

        return await DownloadService.create(settings, DependencyManager(show_install_progress))


async def dependency_versions(dep_manager: Optional[DependencyManager] = None) -> Dict[str, str]:
    """Reports the version each external tool prints, locating the tools first if needed."""
    if dep_manager is None:
        dep_manager = DependencyManager()
        await dep_manager.initialize()
    yt_dlp_version, ffmpeg_version = await asyncio.gather(
        dep_manager.get_version(dep_manager.yt_dlp_path),
        dep_manager.get_version(dep_manager.ffmpeg_path),
    )
    return {'yt-dlp': yt_dlp_version, 'FFmpeg': ffmpeg_version}


async def run_download(settings: Settings, request: DownloadRequest, concurrency: Optional[int] = None) -> BatchResult:
    """Downloads one request with a live progress view."""
    service = await create_service(settings)
    with console.status("Fetching playlist videos..." if request.is_playlist else "Preparing download..."):
        targets = await service.resolve_targets(request)

    titles = {spec.job_id: spec.title for spec in service.build_job_specs(request, targets)}
    view = TerminalProgressView(console, titles)
    async with view:
        result = await service.download(request, concurrency, observers=[view], targets=targets)
    print_summary(result, titles)
    return result


async def run_server(settings: Settings, open_browser: bool):
    service = await create_service(settings)
    console.print(f"[dim] • GUI Server running at[/dim] [cyan]http://localhost:{settings.server_port}[/cyan] (Ctrl+C to stop)")
    await serve(service, settings.server_host, settings.server_port, open_browser=open_browser)


def handle_async_exception(loop: asyncio.AbstractEventLoop, context: dict):
    """Logs unhandled exceptions from asyncio tasks."""
    msg = context.get("exception", context["message"])
    log.critical(f"Caught exception from asyncio task: {msg}")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Runs a coroutine in a fresh event loop with the asyncio exception handler set."""
    async def main_with_exception_handler():
        asyncio.get_running_loop().set_exception_handler(handle_async_exception)
        return await coro
    return asyncio.run(main_with_exception_handler())


def _execute(settings: Settings, request: DownloadRequest, concurrency: Optional[int] = None) -> Optional[BatchResult]:
    """Runs a download to completion; Ctrl+C terminates all running processes."""
    try:
        return run_async(run_download(settings, request, concurrency))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Download cancelled.[/yellow]")
        return None


def _settings_menu(state: AppState):
    with console.status("Checking tool versions..."):
        versions = run_async(dependency_versions())
    tools = "\n".join(f"   {name}: [green]{escape(version)}[/green]" for name, version in versions.items())
    while True:
        settings = state.settings
        console.print(Panel(
            f"1) Download Path: [cyan]{escape(str(settings.download_path))}[/cyan]\n"
            f"2) Show Debug Command: [cyan]{settings.show_debug_command}[/cyan]\n"
            f"3) Default Concurrency: [cyan]{settings.max_concurrent_downloads}[/cyan]\n"
            f"Tools:\n{tools}\n"
            f"0) Back",
            title="[bold]⚙️  Settings[/bold]", border_style="cyan",
        ))
        choice = Prompt.ask("Select", choices=['1', '2', '3', '0'], default='0', console=console)
        if choice == '0':
            return
        try:
            if choice == '1':
                new_path = Prompt.ask("Enter new download path", default=str(settings.download_path), console=console)
                state.settings = state.config_manager.update(settings, download_path=new_path)
            elif choice == '2':
                state.settings = state.config_manager.update(settings, show_debug_command=not settings.show_debug_command)
            elif choice == '3':
                state.settings = state.config_manager.update(
                    settings, max_concurrent_downloads=prompt_concurrency(settings.max_concurrent_downloads)
                )
        except ValidationError as e:
            error_details = e.errors()[0]
            console.print(f"[red]Error in field '{error_details['loc'][0]}': {error_details['msg']}[/red]")


def _build_menu_request(choice: str, url: str, settings: Settings) -> DownloadRequest:
    if choice == '2':
        quality = Prompt.ask("Select Resolution", choices=RESOLUTIONS, default='1080', console=console)
        return DownloadRequest(url=url, type=DownloadType.VIDEO, quality=quality)
    if choice == '3':
        audio_format = Prompt.ask("Select Audio Format", choices=AUDIO_FORMATS,
                                  default=settings.default_audio_format, console=console)
        return DownloadRequest(url=url, type=DownloadType.AUDIO, audio_format=audio_format)
    if choice == '4':
        for key, label in PLAYLIST_QUALITIES.items():
            console.print(f"  [cyan]{key:>7}[/cyan]  {label}")
        quality = Prompt.ask("Select Playlist Format/Quality", choices=list(PLAYLIST_QUALITIES),
                             default='max', console=console)
        return DownloadRequest(url=url, type=DownloadType.PLAYLIST, quality=quality)
    if choice == '5':
        return DownloadRequest(url=url, type=DownloadType.THUMBNAIL)
    return DownloadRequest(url=url, type=DownloadType.VIDEO, quality='max')


def _banner():
    console.print(Panel(
        "[bold magenta]ONYX[/bold magenta]  [dim]v" + __version__ + "[/dim]",
        title="The Ultimate YouTube Downloader", border_style="cyan", padding=(1, 4),
    ))


def interactive_menu(state: AppState):
    """The menu loop: collect parameters, run the download, repeat."""
    _banner()
    while True:
        for key, label in MENU_CHOICES.items():
            console.print(f"  [cyan]{key}[/cyan]) {label}")
        choice = Prompt.ask("What would you like to do?", choices=list(MENU_CHOICES), console=console)

        if choice == '0':
            console.print("[green]Bye! 👋[/green]")
            return
        if choice == '7':
            _settings_menu(state)
            continue
        if choice == '6':
            try:
                run_async(run_server(state.settings, state.settings.open_browser))
            except KeyboardInterrupt:
                console.print("\n[yellow]Server stopped.[/yellow]")
            continue

        url = ""
        while not url:
            url = Prompt.ask("Enter the YouTube URL", console=console).strip()
            if not url:
                console.print("[red]Please enter a valid URL[/red]")

        try:
            request = _build_menu_request(choice, url, state.settings)
            concurrency = prompt_concurrency(state.settings.max_concurrent_downloads) if request.is_playlist else None
            _execute(state.settings, request, concurrency)
        except ValidationError as e:
            console.print(f"[red]Invalid input: {e.errors()[0]['msg']}[/red]")
        except OnyxError as e:
            console.print(f"\n[red]An error occurred:[/red] {escape(str(e))}")


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show informational log messages."),
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
    config_file: Path = typer.Option(CONFIG_FILE, "--config", help="Path to the JSON settings file."),
):
    """Onyx DL"""
    if version:
        console.print(f"[bold]onyx-dl[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    config_manager = ConfigManager(config_file)
    settings = config_manager.load()
    setup_logging(settings.log_level, console=console, verbose=verbose)
    ctx.obj = AppState(config_manager, settings)

    if ctx.invoked_subcommand is None:
        interactive_menu(ctx.obj)


@app.command()
def download(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Video or playlist URL."),
    type_: DownloadType = typer.Option(DownloadType.VIDEO, "--type", "-t", help="What to download."),
    quality: Optional[str] = typer.Option(None, "--quality", "-q", help="'max', 'mid-max', a height like 720, or 'audio' for playlists."),
    audio_format: Optional[str] = typer.Option(None, "--audio-format", "-a", help=f"One of {', '.join(AUDIO_FORMATS)}."),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-j", min=MIN_CONCURRENCY, max=MAX_CONCURRENCY,
        help="Playlist items downloaded at once (default from settings).",
    ),
):
    """Download a single video, audio track, thumbnail or a whole playlist."""
    state: AppState = ctx.obj
    try:
        request = DownloadRequest(
            url=url,
            type=type_,
            quality=quality or state.settings.default_quality,
            audio_format=audio_format or state.settings.default_audio_format,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid input: {e.errors()[0]['msg']}[/red]")
        raise typer.Exit(2)

    result = _execute(state.settings, request, concurrency)
    if result is None or not result.ok:
        raise typer.Exit(1)


@app.command(name="serve")
def serve_command(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind (default from settings)."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on (default from settings)."),
    no_browser: bool = typer.Option(False, "--no-browser", help="Do not open a browser window."),
):
    """Start the HTTP API and WebSocket push channel."""
    state: AppState = ctx.obj
    settings = state.settings.model_copy(update={
        'server_host': host or state.settings.server_host,
        'server_port': port or state.settings.server_port,
    })
    try:
        run_async(run_server(settings, state.settings.open_browser and not no_browser))
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped.[/yellow]")


def main() -> None:
    """Console-script entry point."""
    try:
        app()
    except OnyxError as e:
        console.print(f"\n[red]✗ {escape(str(e))}[/red]")
        log.debug("Full traceback:", exc_info=True)
        sys.exit(1)
