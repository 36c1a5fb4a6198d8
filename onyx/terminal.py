"""
Renders a live multi-job progress view in the terminal with Rich.
"""

from typing import Dict, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table
from rich.text import Text

from .jobs import AggregateSnapshot, JobEvent


def _shorten(text: str, width: int = 50) -> str:
    return text if len(text) <= width else text[:width - 1] + "…"


class TerminalProgressView:
    """
    A snapshot observer that redraws the terminal on every published snapshot.

    Use as an async context manager around the batch; the Live display is
    started on enter and stopped on exit.
    """

    def __init__(self, console: Console, titles: Optional[Dict[str, str]] = None):
        self.console = console
        self.titles: Dict[str, str] = dict(titles or {})
        self.progress = Progress(
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>5.1f}%",
            "•",
            TextColumn("[magenta]{task.fields[speed]}"),
            "•",
            TextColumn("[cyan]ETA {task.fields[eta]}"),
            console=console,
        )
        self._task_ids: Dict[str, TaskID] = {}
        self._snapshot: Optional[AggregateSnapshot] = None
        self._live: Optional[Live] = None
        self.failures: Dict[str, str] = {}

    async def publish(self, event: JobEvent, snapshot: AggregateSnapshot) -> None:
        self._snapshot = snapshot
        if event.kind == 'start':
            title = _shorten(self.titles.get(event.job_id, event.job_id))
            self._task_ids[event.job_id] = self.progress.add_task(escape(title), total=100, speed="-", eta="-")
        elif event.kind == 'progress' and event.progress is not None:
            task_id = self._task_ids.get(event.job_id)
            if task_id is not None:
                self.progress.update(
                    task_id,
                    completed=min(max(event.progress.percent, 0.0), 100.0),
                    speed=event.progress.speed,
                    eta=event.progress.eta,
                )
        elif event.kind in ('complete', 'fail'):
            task_id = self._task_ids.pop(event.job_id, None)
            if task_id is not None:
                self.progress.remove_task(task_id)
            title = self.titles.get(event.job_id, event.job_id)
            if event.kind == 'complete':
                self.console.print(f"[green]✓[/green] {escape(title)}")
            else:
                self.failures[event.job_id] = event.error or "Failed"
                self.console.print(f"[red]✗[/red] {escape(title)}: [red]{escape(event.error or 'Failed')}[/red]")
        self._refresh()

    def render(self) -> Panel:
        """Builds the current view: counters on top, one bar per running job below."""
        snapshot = self._snapshot
        stats = Table.grid(padding=(0, 2))
        for _ in range(4):
            stats.add_column(style="bold cyan", justify="right")
            stats.add_column(style="white")
        if snapshot is None:
            body = Text("Waiting for downloads to start...", style="dim italic", justify="center")
            return Panel(body, title="[bold]📥 Downloads[/bold]", border_style="cyan")

        stats.add_row(
            "Done:", f"[green]{snapshot.completed_count}[/green]",
            "Failed:", f"[red]{snapshot.failed_count}[/red]",
            "Active:", f"[cyan]{snapshot.active_count}[/cyan]",
            "Pending:", f"[yellow]{snapshot.pending_count}[/yellow]",
        )
        title = (
            f"[bold]📥 Downloads {snapshot.completed_count + snapshot.failed_count}/{snapshot.total}"
            f" ({snapshot.overall_percent:.0f}%)[/bold]"
        )
        return Panel(Group(stats, self.progress), title=title, border_style="cyan")

    def _refresh(self):
        if self._live is not None:
            self._live.update(self.render())

    async def __aenter__(self):
        self._live = Live(self.render(), console=self.console, refresh_per_second=8, transient=False)
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live is not None:
            self._live.update(self.render())
            self._live.stop()
            self._live = None
