"""
Target sources: where the verified target set, the release version and the raw target
bytes come from.

The updater only depends on the TargetSource protocol. HttpTargetSource is the plain
HTTPS transport used by the agent: it reads an already-verified targets document from
<base_url>/metadata/targets.json and streams target bytes from <base_url>/targets/<name>.
Authenticating that document (signatures, root of trust, freshness) happens upstream.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple, Union
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# Logger
logger = logging.getLogger(__name__)

METADATA_PATH = "metadata/targets.json"
TARGETS_PATH = "targets"
CHUNK_SIZE = 8192


class FetchError(Exception):
    """A target (or the target set) could not be fetched or failed verification."""

    def __init__(self, name: str, message: str):
        super().__init__(f"{name}: {message}")
        self.name = name


class UnsafeTargetNameError(ValueError):
    """Target name would resolve outside the distribution directory."""


@dataclass(frozen=True)
class Target:
    name: str
    length: int
    hash: bytes


class TargetSource(Protocol):
    def current_release_version(self) -> int: ...

    def target_set(self) -> Dict[str, Target]: ...

    def fetch_target_bytes(self, name: str) -> Iterator[bytes]: ...

    def contains(self, name: str) -> bool: ...


def safe_join(base: Union[str, os.PathLike], name: str) -> Path:
    """Join `name` under `base`, refusing absolute names and `..` escapes.

    Confinement is checked on the resolved parent directory, but the returned path is
    left unresolved so a target that is itself a symlink is replaced or removed as a
    link rather than through it.
    """
    if not name or "\x00" in name or "\\" in name or name.startswith("/"):
        raise UnsafeTargetNameError(f"Unsafe target name: {name!r}")
    parts = name.split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise UnsafeTargetNameError(f"Unsafe target name: {name!r}")
    root = Path(base)
    p = root.joinpath(*parts)
    real_root = root.resolve()
    real_parent = p.parent.resolve()
    if real_parent != real_root and real_root not in real_parent.parents:
        raise UnsafeTargetNameError(f"Unsafe target name: {name!r}")
    return p


# HTTP SESSION (retries/backoff)
def build_session() -> requests.Session:
    retry = Retry(
        total=5,
        connect=5,
        read=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
    sess = requests.Session()
    sess.mount("https://", adapter)
    sess.mount("http://", adapter)
    sess.headers.update({"User-Agent": "dist-updater/1.0"})
    return sess


def _parse_target(name: str, raw: Any) -> Target:
    if not isinstance(raw, dict):
        raise ValueError(f"target {name!r} is not an object")
    length = raw.get("length")
    if isinstance(length, bool) or not isinstance(length, int) or length < 0:
        raise ValueError(f"target {name!r} has invalid length {length!r}")
    hashes = raw.get("hashes") or {}
    sha256 = hashes.get("sha256") if isinstance(hashes, dict) else None
    if not sha256:
        raise ValueError(f"target {name!r} has no sha256 hash")
    return Target(name=name, length=length, hash=bytes.fromhex(str(sha256)))


class HttpTargetSource:
    """Reads the targets document and target bytes over HTTP(S)."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: Tuple[int, int] = (10, 60),
        max_target_size: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or build_session()
        self.timeout = timeout
        self.max_target_size = max_target_size
        self._version: Optional[int] = None
        self._targets: Optional[Dict[str, Target]] = None

    @classmethod
    def from_config(cls, cfg) -> "HttpTargetSource":
        return cls(
            cfg.BASE_URL,
            timeout=(cfg.CONNECT_TIMEOUT_SECONDS, cfg.READ_TIMEOUT_SECONDS),
            max_target_size=cfg.MAX_TARGET_SIZE_BYTES,
        )

    def refresh(self) -> None:
        url = f"{self.base_url}/{METADATA_PATH}"
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise FetchError(METADATA_PATH, f"failed to fetch targets metadata: {exc}") from exc

        try:
            if not isinstance(data, dict):
                raise ValueError("document root is not an object")
            version = data.get("version")
            if isinstance(version, bool) or not isinstance(version, int) or version < 1:
                raise ValueError(f"invalid release version {version!r}")
            raw_targets = data.get("targets", {})
            if not isinstance(raw_targets, dict):
                raise ValueError("targets section is not an object")
            targets = {str(name): _parse_target(str(name), raw) for name, raw in raw_targets.items()}
        except ValueError as exc:
            raise FetchError(METADATA_PATH, f"malformed targets metadata: {exc}") from exc

        self._version = version
        self._targets = targets
        logger.info("Loaded targets metadata: version=%d, %d target(s)", version, len(targets))

    def _ensure_loaded(self) -> None:
        if self._targets is None:
            self.refresh()

    def current_release_version(self) -> int:
        self._ensure_loaded()
        return self._version

    def target_set(self) -> Dict[str, Target]:
        self._ensure_loaded()
        return dict(self._targets)

    def contains(self, name: str) -> bool:
        self._ensure_loaded()
        return name in self._targets

    def fetch_target_bytes(self, name: str) -> Iterator[bytes]:
        url = f"{self.base_url}/{TARGETS_PATH}/{quote(name)}"
        try:
            resp = self.session.get(url, stream=True, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(name, f"download failed: {exc}") from exc
        return self._iter_body(name, resp)

    def _iter_body(self, name: str, resp: requests.Response) -> Iterator[bytes]:
        bytes_read = 0
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                bytes_read += len(chunk)
                if self.max_target_size is not None and bytes_read > self.max_target_size:
                    raise FetchError(name, f"download exceeded cap: {bytes_read} > {self.max_target_size}")
                yield chunk
        except requests.RequestException as exc:
            raise FetchError(name, f"download interrupted: {exc}") from exc
        finally:
            resp.close()
