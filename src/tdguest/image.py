"""Guest image preparation steps driven by qemu-img and virt-customize."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from tdguest.errors import CustomizationError, ResizeError
from tdguest.models import GUEST_SETUP_DIR, BuildConfig
from tdguest.observability import StructuredLogger
from tdguest.runner import Runner

# Setup artifacts copied into the guest, relative to the assets directory.
REQUIRED_ASSETS = ("setup.sh",)
OPTIONAL_ASSETS = (
    "setup-tdx-guest.sh",
    "setup-tdx-common",
    "setup-tdx-config",
    "attestation",
)


@dataclass(frozen=True, slots=True)
class CopyIn:
    source: Path
    target: str

    def as_arg(self) -> str:
        return f"{self.source}:{self.target}"


def stage_image(source: Path, destination: Path, *, logger: StructuredLogger) -> Path:
    """Copy the cloud image to its staging path, world-writable.

    libvirt may run as an unprivileged user, so both virt-install and
    virt-customize must be able to write the staged copy.
    """
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        os.chmod(destination, 0o777)
    except OSError as exc:
        raise CustomizationError(
            f"Failed to copy {source.name} to {destination.parent}",
            context={"source": str(source), "destination": str(destination), "reason": str(exc)},
        ) from exc
    logger.ok(f"Copy the {source.name} => {destination}", step="stage")
    return destination


def resize_image(
    image: Path,
    size_gb: int,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> bool:
    """Grow the disk by *size_gb* and extend the root filesystem.

    Returns ``False`` when only the in-guest grow step failed; that failure
    is reported as a warning.
    """
    runner.run(
        ["qemu-img", "resize", str(image), f"+{size_gb}G"],
        error=ResizeError,
        message=f"Failed to resize guest image to {size_gb}G",
    )
    result = runner.run(
        [
            "virt-customize",
            "-a", str(image),
            "--run-command", "growpart /dev/sda 1",
            "--run-command", "resize2fs /dev/sda1",
            "--run-command", "systemctl mask pollinate.service",
        ],
    )
    if result.returncode != 0:
        logger.warn(f"Failed to resize guest image to {size_gb}G", step="resize")
        return False
    logger.ok(f"Resize the guest image to {size_gb}G", step="resize")
    return True


def plan_copy_ins(config: BuildConfig, *, logger: StructuredLogger) -> tuple[list[CopyIn], list[str]]:
    """Return the copy-in list and the follow-up commands for guest setup."""
    copy_ins: list[CopyIn] = []
    commands: list[str] = []

    for name in REQUIRED_ASSETS:
        path = config.assets_dir / name
        if not path.exists():
            raise CustomizationError(
                f"Missing guest setup artifact: {name}",
                hint="Point --assets-dir at the directory holding the TDX setup scripts.",
                context={"path": str(path)},
            )
        copy_ins.append(CopyIn(path, f"{GUEST_SETUP_DIR}/"))

    for name in OPTIONAL_ASSETS:
        path = config.assets_dir / name
        if path.exists():
            copy_ins.append(CopyIn(path, GUEST_SETUP_DIR))
        else:
            logger.warn(f"Skipping missing setup artifact {name}", step="setup")

    binaries = config.binaries_path
    if binaries.exists():
        copy_ins.append(CopyIn(binaries, f"{GUEST_SETUP_DIR}/bin"))
        staged = f"{GUEST_SETUP_DIR}/bin/{binaries.resolve().name}"
        if binaries.is_dir():
            # An empty binaries directory is not an error; a failed move is.
            commands.append(f"sh -c 'if [ -n \"$(ls -A {staged})\" ]; then mv {staged}/* /bin/; fi'")
        else:
            commands.append(f"mv {staged} /bin/")
    else:
        logger.warn(f"No binaries found at {binaries}, skipping", step="setup")

    commands.append(f"{GUEST_SETUP_DIR}/setup.sh")
    return copy_ins, commands


def setup_image(
    config: BuildConfig,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> None:
    """Copy the setup artifacts into the guest and run ``setup.sh`` there."""
    copy_ins, commands = plan_copy_ins(config, logger=logger)

    cmd: list[str] = [
        "virt-customize",
        "-a", str(config.staged_image),
        "--mkdir", f"{GUEST_SETUP_DIR}/",
        "--mkdir", f"{GUEST_SETUP_DIR}/bin",
    ]
    for copy_in in copy_ins:
        cmd.extend(["--copy-in", copy_in.as_arg()])
    for command in commands:
        cmd.extend(["--run-command", command])

    runner.run(cmd, error=CustomizationError, message="Failed to setup guest image")
    logger.ok("Setup guest image...", step="setup")
