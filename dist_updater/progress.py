"""
Progress events emitted during a reconciliation pass, and two watchers: one that logs,
one that draws a tqdm bar per downloaded file.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from tqdm import tqdm

# Logger
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartFileDownload:
    name: str


@dataclass(frozen=True)
class UpdateFileProgress:
    bytes_done: int
    bytes_total: int


@dataclass(frozen=True)
class FinishFileDownload:
    pass


@dataclass(frozen=True)
class FinishUpdate:
    pass


UpdateProgress = Union[StartFileDownload, UpdateFileProgress, FinishFileDownload, FinishUpdate]


class ProgressWatcher(Protocol):
    def update_progress(self, progress: UpdateProgress) -> None: ...


class LoggingProgressWatcher:
    """Logs downloads at INFO; per-chunk progress only at DEBUG."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self._current: Optional[str] = None

    def update_progress(self, progress: UpdateProgress) -> None:
        if isinstance(progress, StartFileDownload):
            self._current = progress.name
            self.log.info("Downloading %s", progress.name)
        elif isinstance(progress, UpdateFileProgress):
            self.log.debug("%s: %d/%d bytes", self._current, progress.bytes_done, progress.bytes_total)
        elif isinstance(progress, FinishFileDownload):
            self.log.info("Downloaded %s", self._current)
            self._current = None
        elif isinstance(progress, FinishUpdate):
            self.log.info("Update pass finished.")


class TqdmProgressWatcher:
    def __init__(self, leave: bool = False):
        self.leave = leave
        self._bar: Optional[tqdm] = None

    def update_progress(self, progress: UpdateProgress) -> None:
        if isinstance(progress, StartFileDownload):
            self._close()
            self._bar = tqdm(desc=progress.name, unit="B", unit_scale=True, leave=self.leave)
        elif isinstance(progress, UpdateFileProgress) and self._bar is not None:
            self._bar.total = progress.bytes_total
            self._bar.n = progress.bytes_done
            self._bar.refresh()
        elif isinstance(progress, (FinishFileDownload, FinishUpdate)):
            self._close()

    def _close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
