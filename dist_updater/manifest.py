"""
Local update manifest: the durable record of which targets have been applied to the
distribution directory, at which release version, and whether that pass fully succeeded.
Written atomically (temp file + fsync + os.replace) so a crash never leaves a torn manifest.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Union

# Logger
logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class ManifestError(Exception):
    """Manifest could not be read, validated or durably written."""


@dataclass(frozen=True)
class ManifestTargetEntry:
    length: int
    hash: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"length": self.length, "hash": self.hash.hex()}

    @classmethod
    def from_dict(cls, name: str, raw: Any) -> "ManifestTargetEntry":
        if not isinstance(raw, dict):
            raise ManifestError(f"Entry for {name!r} is not an object")
        length = raw.get("length")
        if isinstance(length, bool) or not isinstance(length, int) or length < 0:
            raise ManifestError(f"Entry for {name!r} has invalid length: {length!r}")
        try:
            digest = bytes.fromhex(str(raw.get("hash", "")))
        except ValueError as exc:
            raise ManifestError(f"Entry for {name!r} has invalid hash") from exc
        if not digest:
            raise ManifestError(f"Entry for {name!r} has empty hash")
        return cls(length=length, hash=digest)


class Manifest:
    """Per-target {length, hash} plus a release version and a completeness flag."""

    def __init__(self, files: Mapping[str, ManifestTargetEntry], version: int, incomplete_update: bool):
        if version < 1:
            raise ValueError(f"Manifest version must be >= 1, got {version}")
        self._files: Dict[str, ManifestTargetEntry] = dict(files)
        self._version = version
        self._incomplete_update = incomplete_update

    @classmethod
    def new_incomplete(cls) -> "Manifest":
        return cls(files={}, version=1, incomplete_update=True)

    # Persistence
    @classmethod
    def load(cls, path: PathLike) -> "Manifest":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise ManifestError(f"Failed to read manifest {path}: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def load_or_new(cls, path: PathLike) -> "Manifest":
        """
        Load the manifest at `path`, or return a fresh incomplete one.

        Never raises: a missing, unreadable or corrupt manifest degrades to
        "update everything" on the next pass.
        """
        if not os.path.exists(path):
            logger.info("No manifest at %s; starting from a fresh one.", path)
            return cls.new_incomplete()
        try:
            return cls.load(path)
        except Exception as exc:
            logger.warning("Discarding unusable manifest %s: %s", path, exc)
            return cls.new_incomplete()

    def save(self, path: PathLike) -> None:
        dest = Path(path)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, dest)
        except OSError as exc:
            try:
                if tmp.exists():
                    tmp.unlink()
            except OSError:
                logger.warning("Could not remove temporary manifest %s", tmp)
            raise ManifestError(f"Failed to save manifest {dest}: {exc}") from exc
        logger.debug("Manifest saved to %s (version=%d, incomplete=%s)",
                     dest, self._version, self._incomplete_update)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": {name: entry.to_dict() for name, entry in self._files.items()},
            "version": self._version,
            "incomplete_update": self._incomplete_update,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        if not isinstance(data, dict):
            raise ManifestError("Manifest root is not an object")
        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ManifestError(f"Invalid manifest version: {version!r}")
        incomplete = data.get("incomplete_update")
        if not isinstance(incomplete, bool):
            raise ManifestError(f"Invalid incomplete_update flag: {incomplete!r}")
        raw_files = data.get("files", {})
        if not isinstance(raw_files, dict):
            raise ManifestError("Manifest files section is not an object")
        files = {
            str(name): ManifestTargetEntry.from_dict(name, raw)
            for name, raw in raw_files.items()
        }
        return cls(files=files, version=version, incomplete_update=incomplete)

    # State
    @property
    def version(self) -> int:
        return self._version

    @property
    def incomplete_update(self) -> bool:
        return self._incomplete_update

    @property
    def files(self) -> Mapping[str, ManifestTargetEntry]:
        return dict(self._files)

    def update_version(self, snapshot_version: int) -> None:
        if snapshot_version < 1:
            raise ValueError(f"Release version must be >= 1, got {snapshot_version}")
        self._version = snapshot_version

    def set_update_complete_result(self, success: bool) -> None:
        self._incomplete_update = not success

    def set_target(self, name: str, length: int, hash: bytes) -> None:
        self._files[name] = ManifestTargetEntry(length=length, hash=bytes(hash))

    def contains_target(self, name: str) -> bool:
        return name in self._files

    def remove_target(self, name: str) -> None:
        self._files.pop(name, None)

    def retain_targets(self, predicate: Callable[[str], bool]) -> None:
        """Drop every entry whose name fails `predicate` (called once per name)."""
        for name in list(self._files):
            if not predicate(name):
                del self._files[name]

    def is_target_updated(self, name: str, length: int, hash: bytes) -> bool:
        # Both length and digest must match; a length-only match does not skip a changed file.
        entry = self._files.get(name)
        if entry is None:
            return False
        return entry.length == length and entry.hash == bytes(hash)

    def is_updated(self, snapshot_version: int) -> bool:
        return self._version == snapshot_version and not self._incomplete_update

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return (
            self._files == other._files
            and self._version == other._version
            and self._incomplete_update == other._incomplete_update
        )

    def __repr__(self) -> str:
        return (f"Manifest(version={self._version}, incomplete_update={self._incomplete_update}, "
                f"files={len(self._files)})")
