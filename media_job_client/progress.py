"""Progress sinks: side-effect-only observers of status snapshots.

A sink must not raise and must return quickly. PollLoop pushes every
snapshot it receives and calls `close` exactly once when it stops.
"""

from typing import Any, Callable, Optional, Protocol

from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn

from media_job_client.models import JobState, StatusSnapshot


class ProgressSink(Protocol):
    def on_update(self, snapshot: StatusSnapshot) -> None:
        ...

    def close(self) -> None:
        ...


class NullProgressSink:
    def on_update(self, snapshot: StatusSnapshot) -> None:
        pass

    def close(self) -> None:
        pass


class LoggingProgressSink:
    def __init__(self, level: str = "INFO"):
        self.level = level
        self.logger = logger

    def on_update(self, snapshot: StatusSnapshot) -> None:
        self.logger.log(
            self.level,
            f"{snapshot.state.value}: {snapshot.progress_percent:.0f}% ({snapshot.progress_stage})",
        )

    def close(self) -> None:
        pass


class CallbackProgressSink:
    """Forwards each snapshot to a plain callable"""

    def __init__(self, callback: Callable[[StatusSnapshot], Any]):
        self.callback = callback

    def on_update(self, snapshot: StatusSnapshot) -> None:
        self.callback(snapshot)

    def close(self) -> None:
        pass


class ConsoleProgressSink:
    """Rich progress bar with percentage, status and stage.

    The bar starts on the first snapshot and stops on a terminal one, so the
    same sink can be reused for consecutive jobs.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._progress: Optional[Progress] = None
        self._task_id: Optional[TaskID] = None

    def _start(self) -> None:
        self._progress = Progress(
            TextColumn("Processing"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("Status: {task.fields[status]}"),
            TextColumn("Stage: {task.fields[stage]}"),
            console=self.console,
            transient=False,
        )
        self._task_id = self._progress.add_task(
            "job", total=100, status="Initializing", stage="Starting..."
        )
        self._progress.start()

    def on_update(self, snapshot: StatusSnapshot) -> None:
        if self._progress is None:
            self._start()

        completed = snapshot.progress_percent
        stage = snapshot.progress_stage
        if snapshot.state == JobState.completed:
            completed, stage = 100, "Done"
        self._progress.update(
            self._task_id,
            completed=completed,
            status=snapshot.state.value,
            stage=stage,
        )

        if snapshot.state.is_terminal:
            self.close()
            if snapshot.state == JobState.completed:
                self.console.print("Processing completed successfully!")

    def close(self) -> None:
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task_id = None
