#!/usr/bin/env python3
"""
dist-updater agent: polls the target source and reconciles the local distribution
directory, one pass at a time.

- Config is hot-reloaded from the env file and/or environment variables each cycle.
- Passes are serialized across processes with a lock file next to the manifest.
- `--once` runs a single pass and exits (0 complete, 1 incomplete, 2 fatal,
  3 skipped because another pass holds the lock).
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from filelock import FileLock, Timeout

from .config import DEFAULT_ENV_FILE, Config, ensure_default_env
from .manifest import ManifestError
from .progress import LoggingProgressWatcher, ProgressWatcher, TqdmProgressWatcher
from .self_replace import self_target_in
from .target_source import FetchError, HttpTargetSource
from .updater import AlreadyUpdated, CompleteUpdate, IncompleteUpdate, Updater

logger = logging.getLogger("update_agent")

LOCK_TIMEOUT_SECONDS = 5
EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2
EXIT_SKIPPED = 3


def configure_logging(log_file: Optional[Path]) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def build_updater(cfg: Config, watcher: Optional[ProgressWatcher] = None) -> Updater:
    cfg.dist_dir.mkdir(parents=True, exist_ok=True)
    cfg.manifest_file.parent.mkdir(parents=True, exist_ok=True)
    return Updater(
        HttpTargetSource.from_config(cfg),
        manifest_file=cfg.manifest_file,
        dist_dir=cfg.dist_dir,
        watcher=watcher,
        self_target=cfg.SELF_TARGET or self_target_in(cfg.dist_dir),
    )


def run_once(updater: Updater, lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> int:
    lock_path = str(updater.manifest_file) + ".lock"
    try:
        with FileLock(lock_path, timeout=lock_timeout):
            result = updater.update()
    except Timeout:
        logger.warning("Another update pass holds %s; skipping this cycle.", lock_path)
        return EXIT_SKIPPED
    except FetchError as e:
        logger.error("Could not read target set: %s", e)
        return EXIT_FATAL
    except ManifestError as e:
        logger.error("Manifest failure; local state not recorded: %s", e)
        return EXIT_FATAL

    if isinstance(result, (AlreadyUpdated, CompleteUpdate)):
        return EXIT_OK
    if isinstance(result, IncompleteUpdate):
        for err in result.errors:
            logger.error("  ✗ %s", err)
        return EXIT_INCOMPLETE
    raise TypeError(f"Unexpected update result: {result!r}")


# MAIN LOOP
def main_loop(cfg: Config) -> None:
    while True:
        try:
            cfg.load()  # hot-reload

            if cfg.DISABLE_UPDATES:
                logger.info("Updates are DISABLED. Sleeping %ds.", cfg.POLL_INTERVAL_SECONDS)
                time.sleep(cfg.POLL_INTERVAL_SECONDS)
                continue

            logger.info("Checking for updates...")
            run_once(build_updater(cfg, LoggingProgressWatcher()))
        except Exception:
            logger.exception("Unhandled exception in main loop; sleeping briefly.")
            time.sleep(60)
            continue

        time.sleep(cfg.POLL_INTERVAL_SECONDS)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dist-updater", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--env-file", type=Path, default=DEFAULT_ENV_FILE,
                        help="KEY=VALUE settings file (created with defaults if missing)")
    parser.add_argument("--once", action="store_true", help="run a single update pass and exit")
    parser.add_argument("--progress", action="store_true", help="show a progress bar per download")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    ensure_default_env(args.env_file)
    cfg = Config(args.env_file)
    try:
        cfg.load(first_load=True)
    except (RuntimeError, ValueError) as e:
        configure_logging(None)
        logger.error("Fatal configuration error: %s", e)
        return EXIT_FATAL

    configure_logging(cfg.log_file)

    if args.once:
        watcher = TqdmProgressWatcher() if args.progress else LoggingProgressWatcher()
        return run_once(build_updater(cfg, watcher))

    main_loop(cfg)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
