"""
Reconciler: brings the distribution directory in line with the verified target set.

One pass:
- loads (or freshly creates) the local manifest and returns early if it already records
  a complete update at the source's release version;
- downloads every target whose recorded length/hash differs, streaming into a temp file,
  checking length and sha256, then os.replace'ing it into place;
- deletes files whose targets disappeared from the set;
- records the release version and whether every target succeeded, then saves the
  manifest (the single commit point of the pass).

Per-target failures are collected and never stop sibling targets. Manifest load/save
failures propagate.
"""

import hashlib
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

from .manifest import Manifest, PathLike
from .progress import (
    FinishFileDownload,
    FinishUpdate,
    ProgressWatcher,
    StartFileDownload,
    UpdateFileProgress,
    UpdateProgress,
)
from .self_replace import SelfDeleteReplacer, SelfReplacer
from .target_source import FetchError, Target, TargetSource, safe_join

# Logger
logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


class UpdateError(Exception):
    """A single target failed to download, install or delete."""

    def __init__(self, target: str, cause: BaseException):
        super().__init__(f"failed to update target: {target}: {cause}")
        self.target = target
        self.__cause__ = cause


@dataclass
class UpdateReport:
    updated_files: int = 0
    deleted_files: int = 0
    update_time: timedelta = field(default_factory=timedelta)


@dataclass(frozen=True)
class AlreadyUpdated:
    pass


@dataclass
class CompleteUpdate:
    report: UpdateReport


@dataclass
class IncompleteUpdate:
    errors: List[UpdateError]
    report: UpdateReport


UpdateResult = Union[AlreadyUpdated, CompleteUpdate, IncompleteUpdate]


class Updater:
    def __init__(
        self,
        source: TargetSource,
        manifest_file: PathLike,
        dist_dir: PathLike,
        watcher: Optional[ProgressWatcher] = None,
        self_target: Optional[str] = None,
        self_replacer: Optional[SelfReplacer] = None,
    ):
        self.source = source
        self.manifest_file = Path(manifest_file)
        self.dist_dir = Path(dist_dir)
        self.watcher = watcher
        self.self_target = self_target
        self.self_replacer = self_replacer or SelfDeleteReplacer()
        self._lock = threading.Lock()

    def update_progress(self, progress: UpdateProgress) -> None:
        if self.watcher is None:
            return
        try:
            self.watcher.update_progress(progress)
        except Exception:
            logger.exception("Progress watcher failed on %r; continuing.", progress)

    # Update pass
    def _download_target(self, target: Target, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        # Staging name is unique and never clobbers an existing file (O_EXCL).
        fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), prefix=".", suffix=PART_SUFFIX)
        tmp = Path(tmp_name)
        digest = hashlib.sha256()
        done = 0
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in self.source.fetch_target_bytes(target.name):
                    done += len(chunk)
                    if done > target.length:
                        raise FetchError(target.name, f"length exceeds expected {target.length} bytes")
                    digest.update(chunk)
                    f.write(chunk)
                    self.update_progress(UpdateFileProgress(done, target.length))
                f.flush()
                os.fsync(f.fileno())

            if done != target.length:
                raise FetchError(target.name, f"length mismatch: expected {target.length}, got {done}")
            if digest.digest() != target.hash:
                raise FetchError(
                    target.name,
                    f"checksum mismatch: expected {target.hash.hex()}, got {digest.hexdigest()}",
                )

            if self.self_target is not None and target.name == self.self_target:
                self._install_self(tmp, dest)
            else:
                os.replace(tmp, dest)
        except BaseException:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError:
                    logger.warning("Could not remove partial download %s", tmp)
            raise

    def _install_self(self, tmp: Path, dest: Path) -> None:
        logger.info("Target %s is the running executable; preparing it for replacement.", self.self_target)
        aside = self.self_replacer.prepare(dest)
        try:
            os.replace(tmp, dest)
        except BaseException:
            if aside is not None:
                try:
                    self.self_replacer.rollback(dest, aside)
                except Exception:
                    logger.exception("Could not restore running executable %s from %s", dest, aside)
            raise

    def update_target(self, manifest: Manifest, target: Target) -> bool:
        """Download one target if needed. Returns True when it was downloaded."""
        if manifest.is_target_updated(target.name, target.length, target.hash):
            return False

        dest = safe_join(self.dist_dir, target.name)
        self.update_progress(StartFileDownload(target.name))
        self._download_target(target, dest)
        self.update_progress(FinishFileDownload())

        manifest.set_target(target.name, target.length, target.hash)
        logger.info("Updated %s (%d bytes)", target.name, target.length)
        return True

    def update_all_targets(self, manifest: Manifest, targets: List[Target]) -> Tuple[int, List[UpdateError]]:
        updated_files = 0
        errs: List[UpdateError] = []
        for target in targets:
            try:
                if self.update_target(manifest, target):
                    updated_files += 1
            except Exception as exc:
                logger.error("Failed to update %s: %s", target.name, exc)
                errs.append(UpdateError(target.name, exc))
        return updated_files, errs

    # Delete pass
    def delete_target(self, name: str) -> None:
        path = safe_join(self.dist_dir, name)
        try:
            os.remove(path)
            logger.info("Deleted %s", name)
        except FileNotFoundError:
            logger.debug("%s already absent", name)

    def delete_removed_targets(self, manifest: Manifest, target_names: Set[str]) -> Tuple[int, List[UpdateError]]:
        deleted_files = 0
        errs: List[UpdateError] = []

        def keep(name: str) -> bool:
            nonlocal deleted_files
            if name in target_names:
                return True
            try:
                self.delete_target(name)
            except Exception as exc:
                logger.error("Failed to delete %s: %s", name, exc)
                errs.append(UpdateError(name, exc))
                return True
            deleted_files += 1
            return False

        manifest.retain_targets(keep)
        return deleted_files, errs

    def update(self) -> UpdateResult:
        with self._lock:
            return self._update()

    def update_in_background(self, executor: Executor) -> "Future[UpdateResult]":
        return executor.submit(self.update)

    def _update(self) -> UpdateResult:
        start = time.monotonic()
        snapshot_version = self.source.current_release_version()
        targets = list(self.source.target_set().values())

        manifest = Manifest.load_or_new(self.manifest_file)

        if manifest.is_updated(snapshot_version):
            logger.info("Already at release %d; nothing to do.", snapshot_version)
            return AlreadyUpdated()

        logger.info("Reconciling %s toward release %d (%d target(s), manifest at %d%s)",
                    self.dist_dir, snapshot_version, len(targets), manifest.version,
                    ", incomplete" if manifest.incomplete_update else "")

        updated_files, errs = self.update_all_targets(manifest, targets)
        deleted_files, delete_errs = self.delete_removed_targets(manifest, {t.name for t in targets})
        errs.extend(delete_errs)

        manifest.set_update_complete_result(not errs)
        manifest.update_version(snapshot_version)
        manifest.save(self.manifest_file)

        self.update_progress(FinishUpdate())

        report = UpdateReport(
            updated_files=updated_files,
            deleted_files=deleted_files,
            update_time=timedelta(seconds=time.monotonic() - start),
        )
        if errs:
            logger.warning("Release %d applied with %d error(s): %d updated, %d deleted",
                           snapshot_version, len(errs), updated_files, deleted_files)
            return IncompleteUpdate(errors=errs, report=report)
        logger.info("Release %d applied: %d updated, %d deleted in %.2fs",
                    snapshot_version, updated_files, deleted_files, report.update_time.total_seconds())
        return CompleteUpdate(report)
