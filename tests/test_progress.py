"""Tests for progress watchers."""

import logging

from dist_updater.progress import (
    FinishFileDownload,
    FinishUpdate,
    LoggingProgressWatcher,
    StartFileDownload,
    TqdmProgressWatcher,
    UpdateFileProgress,
)


class TestLoggingProgressWatcher:
    def test_logs_downloads(self, caplog):
        watcher = LoggingProgressWatcher()
        with caplog.at_level(logging.INFO, logger="dist_updater.progress"):
            watcher.update_progress(StartFileDownload("bin/app"))
            watcher.update_progress(UpdateFileProgress(3, 6))
            watcher.update_progress(FinishFileDownload())
            watcher.update_progress(FinishUpdate())

        messages = [r.getMessage() for r in caplog.records]
        assert "Downloading bin/app" in messages
        assert "Downloaded bin/app" in messages
        assert "Update pass finished." in messages
        assert not any("3/6" in m for m in messages)


class TestTqdmProgressWatcher:
    def test_bar_tracks_file(self):
        watcher = TqdmProgressWatcher()
        watcher.update_progress(StartFileDownload("a"))
        bar = watcher._bar
        watcher.update_progress(UpdateFileProgress(4, 10))
        assert bar.n == 4
        assert bar.total == 10

        watcher.update_progress(FinishFileDownload())
        assert watcher._bar is None

    def test_progress_without_start_is_ignored(self):
        watcher = TqdmProgressWatcher()
        watcher.update_progress(UpdateFileProgress(1, 2))
        watcher.update_progress(FinishUpdate())
        assert watcher._bar is None
