"""Read-only live view of a seeding run.

The monitor only ever calls ``CheckpointStore.load``; it never writes the
checkpoint. A missing file means no run has started, a corrupt or
half-readable file is reported for that tick and retried on the next one.
"""

import logging
import sys
import time
from datetime import datetime
from typing import Callable, Optional, TextIO

from fdc_seeder.ingestion.checkpoint_store import CheckpointStore, utc_now
from fdc_seeder.ingestion.ingestion_errors import CheckpointReadError
from fdc_seeder.output.formatters import format_duration, format_monitor_view

logger = logging.getLogger(__name__)

CLEAR_SCREEN = "\033[2J\033[H"


class Monitor:
    """Polls the checkpoint file and renders progress.

    Usage:
        monitor = Monitor(CheckpointStore("usda-seeding-progress.json"), interval=10)
        monitor.run()              # until Ctrl+C
        monitor.run(max_ticks=1)   # single snapshot
    """

    def __init__(
        self,
        store: CheckpointStore,
        interval: float = 10.0,
        out: Optional[TextIO] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        clear_screen: bool = False
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.store = store
        self.interval = interval
        self.out = out or sys.stdout
        self._sleep = sleep
        self._clock = clock
        self.clear_screen = clear_screen

    def render(self) -> str:
        """Render one snapshot of the checkpoint file."""
        try:
            checkpoint = self.store.load()
        except CheckpointReadError as e:
            logger.warning("MONITOR read failed path=%s error=%s", self.store.path, e.message)
            return (
                f"Checkpoint read error: {e.message}\n"
                f"Retrying in {format_duration(self.interval)}."
            )
        if checkpoint is None:
            return f"No active run (no checkpoint at {self.store.path})."
        return format_monitor_view(checkpoint, now=self._clock())

    def tick(self) -> str:
        view = self.render()
        if self.clear_screen:
            self.out.write(CLEAR_SCREEN)
        self.out.write(view + "\n")
        self.out.flush()
        return view

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Render every ``interval`` seconds until interrupted.

        Args:
            max_ticks: Stop after this many renders (None = forever)

        Returns:
            Process exit code (always 0)
        """
        ticks = 0
        try:
            while True:
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep(self.interval)
        except KeyboardInterrupt:
            self.out.write("\nMonitor stopped.\n")
            self.out.flush()
        return 0
