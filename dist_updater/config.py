"""
Updater configuration: class defaults, overridden by a KEY=VALUE env file (hot-reloaded
when its mtime changes), overridden in turn by environment variables.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

# Logger
logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = Path(os.path.expanduser(os.getenv("DIST_UPDATER_ENV", "~/.config/dist_updater/dist_updater.env")))

DEFAULT_ENV_CONTENT = """# dist-updater defaults (auto-generated)
# You can edit this file; the updater hot-reloads it each cycle.

# Where metadata/targets.json and targets/<name> are served from
BASE_URL=https://updates.example.com

# Local layout
DIST_DIR=~/.local/share/dist_updater/dist
MANIFEST_FILE=~/.local/share/dist_updater/manifest.json
LOG_FILE=~/.local/share/dist_updater/dist_updater.log

# Target name of the running executable (empty: detected when it lives under DIST_DIR)
SELF_TARGET=

# Updater behavior
DISABLE_UPDATES=false
POLL_INTERVAL_SECONDS=600
MAX_TARGET_SIZE_BYTES=209715200
"""


def ensure_default_env(path: Path = DEFAULT_ENV_FILE) -> None:
    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(DEFAULT_ENV_CONTENT, encoding="utf-8")
            os.chmod(path, 0o644)
            logger.info("Created default env at %s", path)
    except OSError as e:
        logger.warning("Could not create default env at %s: %s", path, e)


def _parse_bool(v: Optional[str], default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


class Config:
    BASE_URL: str = "https://updates.example.com"
    DIST_DIR: str = "~/.local/share/dist_updater/dist"
    MANIFEST_FILE: str = "~/.local/share/dist_updater/manifest.json"
    LOG_FILE: str = "~/.local/share/dist_updater/dist_updater.log"
    SELF_TARGET: Optional[str] = None

    DISABLE_UPDATES: bool = False
    ALLOW_INSECURE_HTTP: bool = False
    POLL_INTERVAL_SECONDS: int = 600
    CONNECT_TIMEOUT_SECONDS: int = 10
    READ_TIMEOUT_SECONDS: int = 60
    MAX_TARGET_SIZE_BYTES: Optional[int] = 200 * 1024 * 1024

    def __init__(self, env_file: Path = DEFAULT_ENV_FILE):
        self.env_file = Path(env_file)
        self._env_mtime: Optional[float] = None

    def _apply(self, kv: Dict[str, str]) -> None:
        self.BASE_URL      = kv.get("BASE_URL", self.BASE_URL)
        self.DIST_DIR      = kv.get("DIST_DIR", self.DIST_DIR)
        self.MANIFEST_FILE = kv.get("MANIFEST_FILE", self.MANIFEST_FILE)
        self.LOG_FILE      = kv.get("LOG_FILE", self.LOG_FILE)
        if "SELF_TARGET" in kv:
            self.SELF_TARGET = kv["SELF_TARGET"] or None

        if "DISABLE_UPDATES" in kv:
            self.DISABLE_UPDATES = _parse_bool(kv["DISABLE_UPDATES"], self.DISABLE_UPDATES)
        if "ALLOW_INSECURE_HTTP" in kv:
            self.ALLOW_INSECURE_HTTP = _parse_bool(kv["ALLOW_INSECURE_HTTP"], self.ALLOW_INSECURE_HTTP)

        self.POLL_INTERVAL_SECONDS   = int(kv.get("POLL_INTERVAL_SECONDS", self.POLL_INTERVAL_SECONDS))
        self.CONNECT_TIMEOUT_SECONDS = int(kv.get("CONNECT_TIMEOUT_SECONDS", self.CONNECT_TIMEOUT_SECONDS))
        self.READ_TIMEOUT_SECONDS    = int(kv.get("READ_TIMEOUT_SECONDS", self.READ_TIMEOUT_SECONDS))
        if "MAX_TARGET_SIZE_BYTES" in kv:
            raw = kv["MAX_TARGET_SIZE_BYTES"].strip()
            self.MAX_TARGET_SIZE_BYTES = int(raw) if raw else None

    def _from_env_vars(self) -> None:
        keys = (
            "BASE_URL", "DIST_DIR", "MANIFEST_FILE", "LOG_FILE", "SELF_TARGET",
            "DISABLE_UPDATES", "ALLOW_INSECURE_HTTP", "POLL_INTERVAL_SECONDS",
            "CONNECT_TIMEOUT_SECONDS", "READ_TIMEOUT_SECONDS", "MAX_TARGET_SIZE_BYTES",
        )
        self._apply({k: os.environ[k] for k in keys if k in os.environ})

    def _from_env_file(self) -> None:
        if not self.env_file.exists():
            return
        try:
            text = self.env_file.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to read %s: %s", self.env_file, e)
            return

        kv: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            kv[k.strip()] = v.strip()
        self._apply(kv)

    def validate(self) -> None:
        if not self.BASE_URL.lower().startswith("https://"):
            if not (self.ALLOW_INSECURE_HTTP and self.BASE_URL.lower().startswith("http://")):
                raise RuntimeError(f"BASE_URL must be HTTPS: {self.BASE_URL}")
        if self.POLL_INTERVAL_SECONDS <= 0:
            raise RuntimeError("POLL_INTERVAL_SECONDS must be positive")
        if self.MAX_TARGET_SIZE_BYTES is not None and self.MAX_TARGET_SIZE_BYTES <= 0:
            raise RuntimeError("MAX_TARGET_SIZE_BYTES must be positive")

    def load(self, first_load: bool = False) -> bool:
        """Reload settings; returns True when the active settings changed."""
        before = self.to_dict()
        try:
            mtime = self.env_file.stat().st_mtime if self.env_file.exists() else None
        except OSError:
            mtime = None

        if first_load or (mtime != self._env_mtime):
            if not first_load:
                logger.info("Config file change detected; reloading settings from %s", self.env_file)
            self._from_env_file()
            self._env_mtime = mtime

        self._from_env_vars()
        self.validate()

        after = self.to_dict()
        changed = (before != after)
        if changed and not first_load:
            logger.info("Active settings updated: %s", json.dumps(after))
        return changed

    @property
    def dist_dir(self) -> Path:
        return Path(os.path.expanduser(self.DIST_DIR))

    @property
    def manifest_file(self) -> Path:
        return Path(os.path.expanduser(self.MANIFEST_FILE))

    @property
    def log_file(self) -> Path:
        return Path(os.path.expanduser(self.LOG_FILE))

    def to_dict(self) -> dict:
        return {
            "BASE_URL": self.BASE_URL,
            "DIST_DIR": self.DIST_DIR,
            "MANIFEST_FILE": self.MANIFEST_FILE,
            "LOG_FILE": self.LOG_FILE,
            "SELF_TARGET": self.SELF_TARGET,
            "DISABLE_UPDATES": self.DISABLE_UPDATES,
            "ALLOW_INSECURE_HTTP": self.ALLOW_INSECURE_HTTP,
            "POLL_INTERVAL_SECONDS": self.POLL_INTERVAL_SECONDS,
            "CONNECT_TIMEOUT_SECONDS": self.CONNECT_TIMEOUT_SECONDS,
            "READ_TIMEOUT_SECONDS": self.READ_TIMEOUT_SECONDS,
            "MAX_TARGET_SIZE_BYTES": self.MAX_TARGET_SIZE_BYTES,
        }
