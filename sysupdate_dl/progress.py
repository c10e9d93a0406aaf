"""
In-place terminal progress for download passes
"""

import sys
import threading
from typing import Optional, TextIO

from sysupdate_dl import constants
from sysupdate_dl.errors import ReporterMisuse


class ProgressReporter:
    """
    Counts completed jobs against a known total.

    The line is redrawn by a timer thread once per interval rather than on every
    increment, so many workers finishing at once don't flood the terminal.
    Rendering is disabled when the stream is not a terminal or verbose logging
    is on (log lines and a redrawn line don't mix).
    """

    def __init__(self, total: int, label: str = "Progress",
                 interval: float = constants.DEFAULT_PROGRESS_INTERVAL,
                 stream: Optional[TextIO] = None,
                 enabled: Optional[bool] = None,
                 verbose: bool = False):
        """
        Initialize reporter.

        Args:
            total: Number of jobs in the pass
            label: Text shown before the counter
            interval: Seconds between redraws
            stream: Output stream (defaults to stdout)
            enabled: Force rendering on or off (auto-detected if None)
            verbose: Verbose logging is active; disables rendering
        """
        self.total = total
        self.label = label
        self.interval = interval
        self.stream = stream if stream is not None else sys.stdout
        if enabled is None:
            isatty = getattr(self.stream, "isatty", None)
            enabled = bool(isatty and isatty())
        self.enabled = enabled and not verbose

        self._done = 0
        self._complete = False
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def done(self) -> int:
        with self._lock:
            return self._done

    @property
    def complete(self) -> bool:
        return self._complete

    def start(self) -> "ProgressReporter":
        """Start the redraw timer (no-op when rendering is disabled)."""
        if self.enabled and self._thread is None:
            self._render()
            self._thread = threading.Thread(target=self._run, name="progress", daemon=True)
            self._thread.start()
        return self

    def increment(self) -> None:
        """
        Count one completed job. Safe to call from any worker.

        Raises:
            ReporterMisuse: If called after mark_complete()
        """
        with self._lock:
            if self._complete:
                raise ReporterMisuse(f"{self.label}: increment() after completion")
            self._done += 1

    def mark_complete(self) -> None:
        """
        Stop the timer and draw the final line.

        Raises:
            ReporterMisuse: If called more than once
        """
        with self._lock:
            if self._complete:
                raise ReporterMisuse(f"{self.label}: mark_complete() called twice")
            self._complete = True
        self._halt()
        if self.enabled:
            self._render(final=True)

    def _halt(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self._render()

    def _render(self, final: bool = False) -> None:
        done = self.done
        percent = (done / self.total) * 100 if self.total else 100.0
        line = f"\r   {self.label}: {done}/{self.total} ({percent:.1f}%)"
        if final:
            print(f"{line} - done", file=self.stream, flush=True)
        else:
            print(line, end="", file=self.stream, flush=True)

    def __enter__(self) -> "ProgressReporter":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._complete:
            return
        if exc_type is None:
            self.mark_complete()
        else:
            # Leave the counter where the failure happened
            self._complete = True
            self._halt()
            if self.enabled:
                print(file=self.stream, flush=True)
