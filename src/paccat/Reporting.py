"""User-facing diagnostics on stderr.

Everything that is not member content goes through `ConsoleReporter`:
per-target errors, warnings and download notifications. Standard output is
reserved for matched content.
"""

import threading

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, TransferSpeedColumn

from .Downloader import DownloadEvent, DownloadEventKind


class ConsoleReporter:
    """Prints diagnostics and download progress to a stderr console.

    Use as a context manager to show a progress bar for downloads while the
    console is a terminal.

    Attributes:
        console (Console): The stderr console.
        errors (int): Number of errors reported so far.
    """

    def __init__(self, console: Console | None = None, progress: bool | None = None) -> None:
        self.console = console or Console(stderr=True)
        self.show_progress = self.console.is_terminal if progress is None else progress
        self.errors = 0
        self._progress: Progress | None = None
        self._tasks = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "ConsoleReporter":
        if self.show_progress:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=self.console,
                transient=True,
            )
            self._progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None

    def error(self, error) -> None:
        self.errors += 1
        self.console.print(f"[bold red]error:[/bold red] {escape(str(error))}", highlight=False, soft_wrap=True)

    def warning(self, message: str) -> None:
        self.console.print(f"[bold yellow]warning:[/bold yellow] {escape(message)}", highlight=False, soft_wrap=True)

    def notice(self, message: str) -> None:
        self.console.print(escape(message), highlight=False, soft_wrap=True)

    def on_download_event(self, event: DownloadEvent) -> None:
        if event.kind is DownloadEventKind.STARTED:
            self.notice(f"downloading {event.filename}...")
            if self._progress is not None:
                with self._lock:
                    self._tasks[event.filename] = self._progress.add_task(event.filename, total=None)
        elif event.kind is DownloadEventKind.PROGRESS:
            task = self._tasks.get(event.filename)
            if self._progress is not None and task is not None:
                self._progress.update(task, advance=event.advance, total=event.total)
        elif event.kind is DownloadEventKind.FAILED:
            self._finish(event.filename)
            self.notice(f"{event.filename} failed to download")
        elif event.kind is DownloadEventKind.UP_TO_DATE:
            self.notice(f"{event.filename} is up to date")
        elif event.kind is DownloadEventKind.COMPLETED:
            self._finish(event.filename)

    def _finish(self, filename: str) -> None:
        with self._lock:
            task = self._tasks.pop(filename, None)
        if self._progress is not None and task is not None:
            self._progress.remove_task(task)
