"""Optional initrd patching that adds extra binaries to early boot.

Two strategies exist.  ``binary`` attaches the qcow2 through ``qemu-nbd``,
mounts the root partition and rewrites the initrd in place with one extra
binary.  ``ram`` mounts the image with ``guestmount`` and writes a separate
``boot/myinitrd.img`` holding every file of a RAM binaries directory.  Both
append the new executables to the initrd ``init`` script.
"""

from __future__ import annotations

import gzip
import os
import shutil
import tempfile
from pathlib import Path

from tdguest.errors import InitrdError, PreconditionError
from tdguest.models import BuildConfig
from tdguest.observability import StructuredLogger
from tdguest.runner import Runner

GZIP_MAGIC = b"\x1f\x8b"
NBD_DEVICE = "/dev/nbd0"
RAM_INITRD_NAME = "myinitrd.img"


def find_initrd(boot_dir: Path) -> Path:
    candidates = sorted(boot_dir.glob("initrd.img-*"))
    if not candidates:
        raise InitrdError(
            "No initrd found in guest image.",
            context={"boot_dir": str(boot_dir)},
        )
    return candidates[0]


def is_gzip(path: Path) -> bool:
    with path.open("rb") as handle:
        return handle.read(2) == GZIP_MAGIC


def unpack_initrd(initrd: Path, workdir: Path, *, runner: Runner) -> bool:
    """Extract *initrd* into *workdir*; return whether it was gzip-compressed."""
    workdir.mkdir(parents=True, exist_ok=True)
    compressed = is_gzip(initrd)
    with tempfile.TemporaryDirectory(prefix="tdguest-cpio-") as scratch:
        archive = initrd
        if compressed:
            archive = Path(scratch) / "initrd.cpio"
            try:
                with gzip.open(initrd, "rb") as src, archive.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (OSError, EOFError) as exc:
                raise InitrdError(
                    "Failed to decompress initrd.",
                    context={"initrd": str(initrd), "reason": str(exc)},
                ) from exc
        with archive.open("rb") as stdin:
            runner.run(
                ["cpio", "-idm"],
                cwd=workdir,
                stdin=stdin,
                error=InitrdError,
                message="Failed to unpack initrd.",
            )
    return compressed


def repack_initrd(workdir: Path, destination: Path, *, compress: bool, runner: Runner) -> Path:
    """Write *workdir* as a newc cpio archive, gzip'd when *compress* is set."""
    members = ["."]
    for root, dirs, files in os.walk(workdir):
        dirs.sort()
        rel_root = Path(root).relative_to(workdir)
        for name in [*dirs, *sorted(files)]:
            members.append(f"./{(rel_root / name).as_posix()}")

    with tempfile.TemporaryDirectory(prefix="tdguest-cpio-") as scratch:
        file_list = Path(scratch) / "members"
        file_list.write_text("\n".join(members) + "\n", encoding="utf-8")
        archive = Path(scratch) / "initrd.cpio"
        with file_list.open("rb") as stdin, archive.open("wb") as stdout:
            runner.run(
                ["cpio", "-o", "-H", "newc"],
                cwd=workdir,
                stdin=stdin,
                stdout=stdout,
                error=InitrdError,
                message="Failed to repack initrd.",
            )
        try:
            if compress:
                with archive.open("rb") as src, gzip.open(destination, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            else:
                shutil.copyfile(archive, destination)
        except OSError as exc:
            raise InitrdError(
                "Failed to write initrd.",
                context={"destination": str(destination), "reason": str(exc)},
            ) from exc
    return destination


def add_to_init(workdir: Path, binary: Path, dest_dir: str, *, init_entry: str | None = None) -> str:
    """Copy *binary* into the unpacked initrd and register it in ``init``."""
    target_dir = workdir / dest_dir.lstrip("/")
    target = target_dir / binary.name
    entry = init_entry or f"{dest_dir.rstrip('/')}/{binary.name}"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(binary, target)
        os.chmod(target, 0o755)
        with (workdir / "init").open("a", encoding="utf-8") as handle:
            handle.write(entry + "\n")
    except OSError as exc:
        raise InitrdError(
            f"Failed to add {binary.name} to initrd.",
            context={"binary": str(binary), "target": str(target), "reason": str(exc)},
        ) from exc
    return entry


def first_partition(lsblk_output: str) -> str:
    for line in lsblk_output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "part":
            return parts[0]
    raise InitrdError("No partition found on NBD device.", context={"device": NBD_DEVICE})


def inject_binary_into_initrd(
    config: BuildConfig,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> Path:
    """Rewrite the guest's initrd in place with one extra binary."""
    binary = config.binaries_path
    if not binary.is_file():
        raise InitrdError(
            "Initrd binary injection needs a single binary file.",
            hint="Pass -b <path to binary>.",
            context={"path": str(binary)},
        )
    if os.geteuid() != 0:
        raise PreconditionError(
            "Initrd binary injection needs root privileges.",
            hint="Re-run with sudo; qemu-nbd and mount require root.",
        )

    image = config.staged_image
    mount = config.paths.mnt_dir
    runner.run(["modprobe", "nbd", "max_part=8"], error=InitrdError, message="Failed to load nbd module.")
    runner.run(
        ["qemu-nbd", "-c", NBD_DEVICE, str(image)],
        error=InitrdError,
        message="Failed to attach guest image to NBD.",
    )
    try:
        runner.run(["partprobe", NBD_DEVICE], error=InitrdError, message="Failed to probe partitions.")
        listing = runner.run(["lsblk", "-lno", "NAME,TYPE", NBD_DEVICE], log=False)
        partition = first_partition(listing.stdout.decode(errors="replace") if listing.stdout else "")
        runner.run(
            ["mount", f"/dev/{partition}", str(mount)],
            error=InitrdError,
            message="Failed to mount guest root partition.",
        )
        try:
            initrd = find_initrd(mount / "boot")
            with tempfile.TemporaryDirectory(prefix="tdguest-initrd-") as scratch:
                workdir = Path(scratch) / "initrd"
                unpack_initrd(initrd, workdir, runner=runner)
                entry = add_to_init(workdir, binary, config.binary_dest_dir)
                repack_initrd(workdir, initrd, compress=True, runner=runner)
        finally:
            runner.run(["umount", str(mount)])
    finally:
        runner.run(["qemu-nbd", "-d", NBD_DEVICE])

    logger.ok(f"Inject {entry} into {initrd.name}", step="initrd")
    return initrd


def inject_ram_binaries_into_initrd(
    config: BuildConfig,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> Path:
    """Build ``boot/myinitrd.img`` with every RAM binary appended to ``init``."""
    source_dir = config.ram_binaries_path
    if source_dir is None or not source_dir.is_dir():
        raise InitrdError(
            "RAM binaries directory not found.",
            hint="Pass -r <dir> or set RAM_BINARIES_PATH.",
            context={"path": str(source_dir)},
        )
    binaries = sorted(path for path in source_dir.iterdir() if path.is_file())
    if not binaries:
        raise InitrdError("RAM binaries directory is empty.", context={"path": str(source_dir)})

    mount = config.paths.guest_mount
    workdir = config.paths.initrd_workdir
    mount.mkdir(parents=True, exist_ok=True)
    runner.run(
        ["guestmount", "-a", str(config.staged_image), "-i", str(mount)],
        error=InitrdError,
        message="Failed to mount guest image.",
    )
    try:
        initrd = find_initrd(mount / "boot")
        shutil.rmtree(workdir, ignore_errors=True)
        compressed = unpack_initrd(initrd, workdir, runner=runner)
        for binary in binaries:
            logger.info(f"Adding {binary.name} to initrd", step="initrd")
            add_to_init(workdir, binary, "/", init_entry=f"./{binary.name}")
        destination = repack_initrd(
            workdir,
            mount / "boot" / RAM_INITRD_NAME,
            compress=compressed,
            runner=runner,
        )
    finally:
        runner.run(["guestunmount", str(mount)])

    logger.ok(f"Wrote {destination.name} with {len(binaries)} binaries", step="initrd")
    return destination
