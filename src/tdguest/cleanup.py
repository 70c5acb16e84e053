"""Idempotent teardown for the build pipeline and for a running TD."""

from __future__ import annotations

import os
import shutil
import signal
import time
from pathlib import Path

from tdguest.models import BuildConfig, RuntimePaths
from tdguest.observability import StructuredLogger
from tdguest.runner import Runner

TD_GRACE_SECONDS = 3


def cleanup_build(config: BuildConfig, *, runner: Runner, logger: StructuredLogger) -> None:
    """Remove build scratch state.  The staged image is left untouched."""
    config.checksum_path.unlink(missing_ok=True)

    mount = config.paths.guest_mount
    if mount.is_dir():
        runner.run(["guestunmount", str(mount)], log=False)
        shutil.rmtree(mount, ignore_errors=True)

    workdir = config.paths.initrd_workdir
    if workdir.is_dir():
        shutil.rmtree(workdir, ignore_errors=True)

    logger.ok("Cleanup!", step="cleanup")


def read_pid(pid_file: Path) -> int | None:
    try:
        text = pid_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text.isdigit() or int(text) <= 0:
        return None
    return int(text)


def clean_guest(
    paths: RuntimePaths,
    *,
    logger: StructuredLogger,
    grace_seconds: float = TD_GRACE_SECONDS,
) -> int | None:
    """Terminate the TD and remove its side-channel files.

    Returns the PID that was signalled, if any.
    """
    for pattern in paths.stale_globs():
        for path in paths.tmp_dir.glob(pattern):
            path.unlink(missing_ok=True)
    paths.setup_log.unlink(missing_ok=True)

    pid = read_pid(paths.pid_file)
    if pid is not None:
        logger.info(f"Cleanup, kill TD with PID: {pid}", operation="clean", step="clean")
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError) as exc:
            logger.warn(f"Could not signal PID {pid}: {exc}", operation="clean", step="clean")

    time.sleep(grace_seconds)
    paths.pid_file.unlink(missing_ok=True)
    return pid
