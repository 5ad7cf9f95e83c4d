"""Shared fixtures: in-memory target source, recording watcher, fake self-replacer."""

import hashlib
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import pytest

from dist_updater.target_source import FetchError, Target


def make_target(name: str, content: bytes) -> Target:
    return Target(name=name, length=len(content), hash=hashlib.sha256(content).digest())


class FakeTargetSource:
    """Serves targets from memory and records every fetch."""

    def __init__(self, version: int, contents: Dict[str, bytes], chunk_size: int = 4):
        self.version = version
        self.contents = dict(contents)
        self.chunk_size = chunk_size
        self.fetches: List[str] = []
        self.failing: Dict[str, Exception] = {}
        self.overrides: Dict[str, Target] = {}

    def current_release_version(self) -> int:
        return self.version

    def target_set(self) -> Dict[str, Target]:
        targets = {name: make_target(name, data) for name, data in self.contents.items()}
        targets.update(self.overrides)
        return targets

    def contains(self, name: str) -> bool:
        return name in self.contents

    def fetch_target_bytes(self, name: str) -> Iterator[bytes]:
        self.fetches.append(name)
        if name in self.failing:
            raise self.failing[name]
        data = self.contents[name]
        return iter([data[i:i + self.chunk_size] for i in range(0, len(data), self.chunk_size)])


class RecordingWatcher:
    def __init__(self):
        self.events = []

    def update_progress(self, progress) -> None:
        self.events.append(progress)


class FakeSelfReplacer:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.prepared: List[Path] = []
        self.rolled_back: List[Path] = []

    def prepare(self, path: Path) -> Optional[Path]:
        self.prepared.append(Path(path))
        if self.error is not None:
            raise self.error
        return None

    def rollback(self, path: Path, aside: Path) -> None:
        self.rolled_back.append(Path(path))


@pytest.fixture
def dist_dir(tmp_path):
    d = tmp_path / "dist"
    d.mkdir()
    return d


@pytest.fixture
def manifest_file(tmp_path):
    return tmp_path / "state" / "manifest.json"


@pytest.fixture
def network_error():
    return FetchError("c", "simulated network error")
