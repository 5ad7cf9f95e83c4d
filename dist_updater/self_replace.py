"""
Making room for a new copy of the running executable.

POSIX lets os.replace swap a running binary in place (the process keeps its old inode),
so nothing has to happen beforehand. Windows refuses to overwrite a mapped image but does
allow renaming it, so the old binary is moved aside to a unique `.<name>.*.old` file and
moved back if the new copy cannot be installed.
"""

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional, Protocol, Union

# Logger
logger = logging.getLogger(__name__)

OLD_SUFFIX = ".old"


class SelfReplaceError(Exception):
    """The running executable could not be moved out of the way."""


class SelfReplacer(Protocol):
    def prepare(self, path: Path) -> Optional[Path]: ...

    def rollback(self, path: Path, aside: Path) -> None: ...


def running_executable() -> Path:
    return Path(sys.executable).resolve()


class SelfDeleteReplacer:
    def __init__(self, windows: bool = os.name == "nt"):
        self.windows = windows

    def prepare(self, path: Path) -> Optional[Path]:
        """Clear `path` for replacement. Returns where the old file went, if it moved."""
        path = Path(path)
        if not self.windows or not path.exists():
            return None
        try:
            # Reserve a name no target can already hold.
            fd, aside_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=OLD_SUFFIX)
            os.close(fd)
            aside = Path(aside_name)
        except OSError as exc:
            raise SelfReplaceError(f"Failed to reserve a name next to {path}: {exc}") from exc
        try:
            os.replace(path, aside)
        except OSError as exc:
            aside.unlink(missing_ok=True)
            raise SelfReplaceError(f"Failed to move running executable {path} aside: {exc}") from exc
        logger.info("Moved running executable aside: %s -> %s", path, aside)
        return aside

    def rollback(self, path: Path, aside: Path) -> None:
        os.replace(aside, path)
        logger.warning("Restored running executable %s from %s", path, aside)


def self_target_in(dist_dir: Union[str, os.PathLike], executable: Optional[Path] = None) -> Optional[str]:
    """Target name of the running executable if it lives under `dist_dir`, else None.

    Without an explicit `executable` this only applies to frozen builds; a plain
    interpreter run is never one of the distributed files.
    """
    if executable is None:
        if not getattr(sys, "frozen", False):
            return None
        exe = running_executable()
    else:
        exe = Path(executable).resolve()
    root = Path(dist_dir).resolve()
    if root not in exe.parents:
        return None
    return exe.relative_to(root).as_posix()
